from functools import partial
from typing import Optional

from textual import on, work
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.widgets import LoadingIndicator

from fulfillment.engine.claims import ClaimEngine
from fulfillment.engine.orders import OrderEngine
from fulfillment.engine.sweeps import SweepRunner
from fulfillment.services.notifier import Notifier
from fulfillment.utils.config import Settings, get_settings
from fulfillment.utils.logger import get_logger
from fulfillment.utils.messages import (
    ModeSwitchedMessage,
    QuitRequestedMessage,
    SweepFinishedMessage,
)
from fulfillment.views.scr_claims import ClaimsScreen
from fulfillment.views.scr_orders import OrderManagementScreen

_logger = get_logger(__name__)


class FulfillmentConsoleApp(App):
    BINDINGS = [
        Binding("ctrl+t", "switch_light", "Toggle Theme", show=True),
    ]

    MODES = {
        "orders": OrderManagementScreen,
        "claims": ClaimsScreen,
    }

    MENU = {"orders": "Order Management", "claims": "Warranty Claims"}

    def __init__(
        self,
        settings: Optional[Settings] = None,
        orders: Optional[OrderEngine] = None,
        claims: Optional[ClaimEngine] = None,
    ):
        super().__init__()
        self.settings = settings or get_settings()
        notifier = Notifier()
        self.orders = orders or OrderEngine(settings=self.settings, notifier=notifier)
        self.claims = claims or ClaimEngine(
            clock=self.orders.clock, ids=self.orders.ids, notifier=self.orders.notifier
        )
        self.sweeps = SweepRunner(self.orders)
        self.last_sweep: dict = {}

    def compose(self) -> ComposeResult:
        yield LoadingIndicator()

    async def on_mount(self) -> None:
        # each job keeps its own cadence
        for name, seconds in self.sweeps.schedule().items():
            self.set_interval(seconds, partial(self.run_sweep_job, name))
        self.post_message(ModeSwitchedMessage(self.current_mode, "orders"))
        await self.switch_mode("orders")

    def action_switch_light(self):
        if self.theme == "textual-dark":
            self.theme = "solarized-light"
        else:
            self.theme = "textual-dark"
        self.notify(f"Theme changed to {self.theme}")

    def run_sweep_job(self, name: str) -> None:
        self.run_worker(
            self._run_sweep_job(name), group=f"sweep-{name}", exclusive=True
        )

    async def _run_sweep_job(self, name: str) -> None:
        result = await self.sweeps.run_job(name)
        self.last_sweep = {**self.last_sweep, name: result}
        if result is None:
            self.notify(f"Sweep {name} failed.", severity="warning")
        self.screen.post_message(SweepFinishedMessage(self.last_sweep))

    @work(exclusive=True, group="sweeps")
    async def action_run_sweeps(self):
        results = await self.sweeps.run_all()
        self.last_sweep = results
        failed = [name for name, res in results.items() if res is None]
        if failed:
            self.notify(f"Sweeps failed: {', '.join(failed)}", severity="warning")
        else:
            self.notify("Sweeps finished.")
        self.screen.post_message(SweepFinishedMessage(results))

    @on(QuitRequestedMessage)
    @work
    async def handle_quit(self):
        # let pending notifications go out before leaving
        await self.orders.notifier.drain()
        self.exit()


def main() -> None:
    _logger.info("starting fulfillment console")
    FulfillmentConsoleApp().run()


if __name__ == "__main__":
    main()
