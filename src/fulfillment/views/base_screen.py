from textual import on, work
from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Container
from textual.screen import Screen
from textual.widgets import Footer, Header, Label, ListItem, ListView, Markdown

from fulfillment.utils.messages import ModeSwitchedMessage, SweepFinishedMessage
from fulfillment.utils.pure import generate_markdown_table
from fulfillment.views.modal_dialog import QuitDialogModal


class Sidebar(Container):
    DEFAULT_CSS = """
    Sidebar {
        dock: left;
        width: 28;
        border-right: vkey $primary;
        padding: 0 1;
    }
    Sidebar Label {
        text-style: bold;
        margin-top: 1;
    }
    """

    init_mode = ""

    def compose(self) -> ComposeResult:
        yield Label("Last Sweep", id="label-info-1")
        yield Markdown("_not run yet_", id="md-sweep")
        yield Label("Menu", id="label-info-2")
        yield ListView(id="list-menu")

    async def on_mount(self):
        self.init_mode = self.app.current_mode

        list_menu: ListView = self.query_one("#list-menu")
        await list_menu.clear()
        await list_menu.extend(
            [
                ListItem(Label(v), id="list-menu-item-" + k)
                for k, v in self.app.MENU.items()
            ]
        )
        self.highlight_item(self.init_mode)
        if self.app.last_sweep:
            await self.show_sweep(self.app.last_sweep)

    async def on_list_view_selected(self, event: ListView.Selected):
        selected_mode = event.item.id.removeprefix("list-menu-item-")
        self.highlight_item(self.init_mode)
        if self.app.current_mode != selected_mode:
            self.post_message(ModeSwitchedMessage(self.app.current_mode, selected_mode))
            await self.app.switch_mode(selected_mode)

    async def show_sweep(self, results: dict) -> None:
        rows = [
            [name, "failed" if res is None else _summarize(res)]
            for name, res in results.items()
        ]
        await self.query_one("#md-sweep", Markdown).update(
            generate_markdown_table(["Job", "Result"], rows, ["l", "r"])
        )

    def highlight_item(self, mode_str: str):
        list_menu = self.query_one("#list-menu")
        for item in list_menu.children:
            item.highlighted = mode_str in item.id


def _summarize(result) -> str:
    if isinstance(result, tuple):
        return "/".join(str(x) for x in result)
    if isinstance(result, list):
        return str(len(result))
    return str(result)


class BaseScreen(Screen):
    """
    Inherited by all screens, contains common elements like
    headers, footers, sidebar, and keybindings.
    """

    BINDINGS = [
        Binding("ctrl+z", "quit", "Quit App", show=True),
        Binding("ctrl+s", "app.run_sweeps", "Run Sweeps", show=True),
    ]

    def __init__(self):
        super().__init__()
        self.configure()

    def configure(self, header_sub_title: str = "Base Screen") -> None:
        self.app.title = "Fulfillment Console"
        self.sub_title = header_sub_title
        for k, v in self.app.MODES.items():
            if isinstance(self, v):
                self.sub_title = self.app.MENU.get(k, header_sub_title)

    def compose(self) -> ComposeResult:
        yield Sidebar()
        yield Header()
        yield Footer(show_command_palette=False)

    @on(SweepFinishedMessage)
    async def handle_sweep_finished(self, message: SweepFinishedMessage):
        await self.query_one(Sidebar).show_sweep(message.results)

    def report_error(self, exc: Exception) -> None:
        self.app.notify(str(exc), title=type(exc).__name__, severity="error")

    @work()
    async def action_quit(self):
        await self.app.push_screen_wait(QuitDialogModal())
