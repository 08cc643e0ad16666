# main.py
import asyncio
import sys
import time
import questionary
from datetime import datetime, timezone
from rich.live import Live
from rich.table import Table
from rich.layout import Layout
from rich.console import Console
from rich.panel import Panel

from market_gateway.config import load_config
from market_gateway.errors import AllSourcesFailedError
from market_gateway.logger import setup_console_logger, AsyncAuditLogger, FETCH_LOG_HEADER
from market_gateway.market_engine import MarketEngine
from market_gateway.models import AggregateResult, SourceStatus

STATUS_STYLE = {
    SourceStatus.ONLINE: "green",
    SourceStatus.OFFLINE: "red",
    SourceStatus.ERROR: "yellow",
}

# --- UI HELPER FUNCTIONS ---

def startup_selection(config):
    """Interactive CLI to select the symbol and the sources to query."""
    print("\n📡 MARKET DATA GATEWAY \n")
    symbol = questionary.select("Select Symbol to Watch:", choices=config['dashboard']['supported_symbols']).ask()
    if not symbol:
        print("No symbol selected. Exiting.")
        sys.exit()

    avail_sources = list(config['aggregator']['sources'])
    sources = questionary.checkbox("Select Sources to Query:", choices=avail_sources).ask()
    if not sources:
        print("Need at least 1 source. Exiting.")
        sys.exit()
    return symbol, sources

def generate_dashboard(result: AggregateResult, health, refreshed_at: datetime):
    """
    Builds the Rich layout: per-source prices, arbitrage and market summary.
    """
    price_table = Table(title=f"📈 {result.symbol} by Source")
    price_table.add_column("Source", style="magenta")
    price_table.add_column("Price", justify="right")
    price_table.add_column("Bid", justify="right")
    price_table.add_column("Ask", justify="right")
    price_table.add_column("24h %", justify="right")
    price_table.add_column("Volume", justify="right")
    price_table.add_column("Latency", justify="right", style="dim")

    for t in result.exchanges:
        style = STATUS_STYLE[t.status]
        latency = health.get(t.exchange)
        latency_str = f"{latency.last_latency_ms:.0f}ms" if latency else "-"
        if not t.is_valid:
            price_table.add_row(t.exchange.upper(), f"[{style}]{t.status.value}[/{style}]", "-", "-", "-", "-", latency_str)
            continue
        change_style = "green" if t.change_24h >= 0 else "red"
        price_table.add_row(
            t.exchange.upper(),
            f"[{style}]${t.price:,.2f}[/{style}]",
            f"{t.bid:,.2f}",
            f"{t.ask:,.2f}",
            f"[{change_style}]{t.change_24h:+.2f}%[/{change_style}]",
            f"{t.volume_24h:,.0f}",
            latency_str,
        )

    arb = result.arbitrage
    if arb:
        arb_text = (f"[bold green]BUY[/bold green] {arb.buy_exchange.upper()} @ ${arb.buy_price:,.2f}\n"
                    f"[bold red]SELL[/bold red] {arb.sell_exchange.upper()} @ ${arb.sell_price:,.2f}\n\n"
                    f"Profit: ${arb.profit:,.4f} ([bold]{arb.profit_percent:.3f}%[/bold]) before fees")
    else:
        arb_text = "[dim]No cross-venue opportunity[/dim]"

    layout = Layout()
    layout.split_column(
        Layout(name="top"),
        Layout(name="bottom")
    )

    layout["top"].split_row(
        Layout(Panel(price_table), ratio=3),
        Layout(Panel(arb_text, title="⚖️ Arbitrage"), ratio=1)
    )

    s = result.summary
    footer = Panel(
        f"[bold gold1]AVG PRICE: ${s.avg_price:,.2f}[/bold gold1]  |  "
        f"VOLUME: {s.total_volume:,.0f}  |  "
        f"SOURCES ONLINE: {s.online_count}/{s.total_count}  |  "
        f"{refreshed_at:%H:%M:%S} UTC",
        style="white on blue",
    )
    layout["bottom"].update(footer)
    layout["bottom"].size = 3

    return layout

# --- MAIN CONTROLLER ---

class GatewayDashboard:
    def __init__(self, symbol, sources, config):
        self.symbol = symbol
        self.config = config
        self.config['aggregator']['sources'] = [s for s in self.config['aggregator']['sources'] if s in sources]

        self.logger = setup_console_logger("MarketGateway", self.config['logging']['level'])
        audit = None
        if self.config['audit']['enabled']:
            audit = AsyncAuditLogger(self.config['audit']['fetch_log'], header=FETCH_LOG_HEADER)
        self.engine = MarketEngine(self.config, self.logger, audit=audit)
        self.refresh = float(self.config['dashboard']['refresh_seconds'])

    async def run(self):
        try:
            await self.engine.start()
            console = Console()
            with Live(console=console, refresh_per_second=4) as live:
                while True:
                    start_tick = time.time()
                    try:
                        result = await self.engine.aggregate(self.symbol)
                    except AllSourcesFailedError as e:
                        self.logger.error(f"❌ {e}")
                        result = e.result
                    if result is not None:
                        live.update(generate_dashboard(result, self.engine.health(), datetime.now(timezone.utc)))

                    elapsed = time.time() - start_tick
                    await asyncio.sleep(max(0, self.refresh - elapsed))
        finally:
            print("Shutting down resources...")
            await self.engine.shutdown()

if __name__ == "__main__":
    raw_conf = load_config("config.yaml")
    try:
        sel_symbol, sel_sources = startup_selection(raw_conf)
        dashboard = GatewayDashboard(sel_symbol, sel_sources, raw_conf)
        try:
            import uvloop
            asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
        except ImportError:
            pass
        asyncio.run(dashboard.run())
    except KeyboardInterrupt:
        print("\n🛑 Gateway Stopped by User.")
        sys.exit()
