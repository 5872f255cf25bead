from typing import Optional

from textual import on, work
from textual.app import ComposeResult
from textual.containers import Horizontal, Vertical
from textual.events import ScreenResume
from textual.reactive import reactive
from textual.widgets import Button, DataTable, MarkdownViewer, Select

from fulfillment.db.models import CLAIM_STATUSES, Claim, Warranty
from fulfillment.engine.errors import FulfillmentError
from fulfillment.utils.messages import ClaimsChangedMessage, ModeSwitchedMessage
from fulfillment.utils.pure import generate_markdown_table
from fulfillment.views.base_screen import BaseScreen
from fulfillment.views.modal_dialog import PromptModal


class ClaimsScreen(BaseScreen):
    """Review warranty claims and set their status."""

    DEFAULT_CSS = """
    ClaimsScreen #md-claim-detail {
        height: 1fr;
    }
    ClaimsScreen #table-claims {
        height: 1fr;
    }
    ClaimsScreen #hort-claim-actions {
        height: auto;
    }
    ClaimsScreen #select-claim-status {
        width: 24;
    }
    """

    status_filter = reactive("all")
    selected_claim = reactive[Optional[str]](None)

    def compose(self) -> ComposeResult:
        yield from super().compose()
        with Vertical():
            yield MarkdownViewer(id="md-claim-detail", show_table_of_contents=False)
            yield DataTable(id="table-claims")
        with Horizontal(id="hort-claim-actions"):
            yield Select(
                [(s.title(), s) for s in ("all", *CLAIM_STATUSES)],
                value="all",
                allow_blank=False,
                id="select-claim-status",
            )
            yield Button("Refresh", id="btn-refresh")
            for status in CLAIM_STATUSES:
                yield Button(
                    status.title(), id=f"btn-set-{status}", classes="claim-status"
                )

    def on_mount(self) -> None:
        table = self.query_one(DataTable)
        table.cursor_type = "row"
        table.zebra_stripes = True
        table.add_columns("Claim ID", "Warranty", "Filed", "Status", "Issue")

    @on(Button.Pressed, "#btn-refresh")
    @on(ModeSwitchedMessage)
    @on(ScreenResume)
    @on(ClaimsChangedMessage)
    async def handle_refresh(self):
        self._load_claims()

    @on(Select.Changed, "#select-claim-status")
    def handle_filter(self, event: Select.Changed) -> None:
        self.status_filter = str(event.value)

    def watch_status_filter(self, old: str, new: str) -> None:
        if self.is_mounted:
            self._load_claims()

    @on(DataTable.RowHighlighted)
    def handle_row_highlight(self) -> None:
        table = self.query_one(DataTable)
        if table.row_count == 0 or table.cursor_row is None:
            self.selected_claim = None
            return
        self.selected_claim = str(table.get_row_at(table.cursor_row)[0])

    def watch_selected_claim(self, old: Optional[str], new: Optional[str]) -> None:
        self._load_and_render_detail(new)

    @work(exclusive=True, group="claims")
    async def _load_claims(self) -> None:
        claims = await self.app.claims.list_claims(status=self.status_filter)
        table = self.query_one(DataTable)
        table.clear()
        for c in claims:
            issue = c.issue_description
            table.add_row(
                c.claim_id,
                c.warranty_id,
                c.created_at.strftime("%Y-%m-%d %H:%M"),
                c.status,
                issue if len(issue) <= 40 else issue[:37] + "...",
            )
        if claims:
            table.cursor_coordinate = (0, 0)
            self.selected_claim = claims[0].claim_id
            self._load_and_render_detail(self.selected_claim)
        else:
            self.selected_claim = None

    @work(exclusive=True, group="claim-detail")
    async def _load_and_render_detail(self, claim_id: Optional[str]) -> None:
        viewer = self.query_one("#md-claim-detail", MarkdownViewer)
        if claim_id is None:
            viewer.document.update("### Select a claim to review it.")
            return
        try:
            claim = await self.app.claims.get_claim(claim_id)
            warranty = await self.app.orders.warranties.get_warranty(claim.warranty_id)
        except FulfillmentError as exc:
            viewer.document.update(f"### {exc}")
            return
        viewer.document.update(_claim_markdown(claim, warranty))

    @on(Button.Pressed, ".claim-status")
    @work()
    async def handle_set_status(self, event: Button.Pressed) -> None:
        button_id = event.button.id or ""
        if self.selected_claim is None:
            return
        status = button_id.removeprefix("btn-set-")
        notes = await self.app.push_screen_wait(
            PromptModal(
                f"Set claim {self.selected_claim} to {status}",
                placeholder="Admin notes (optional)",
            )
        )
        if notes is None:
            return
        try:
            claim = await self.app.claims.update_claim_status(
                self.selected_claim, status, notes or None
            )
        except FulfillmentError as exc:
            self.report_error(exc)
            return
        self.app.notify(f"Claim {claim.claim_id}: {claim.status}")
        self.post_message(ClaimsChangedMessage())


def _claim_markdown(claim: Claim, warranty: Warranty) -> str:
    rows = [
        ["Claim", claim.claim_id],
        ["Status", claim.status],
        ["Filed", claim.created_at.strftime("%Y-%m-%d %H:%M")],
        ["Customer", warranty.user_id],
        ["Product", warranty.product_id],
        ["Serial", warranty.serial_number],
        ["Warranty expires", warranty.expiry_date.strftime("%Y-%m-%d")],
        ["Admin notes", claim.admin_notes or "-"],
    ]
    md = generate_markdown_table(["Field", "Value"], rows)
    md += f"\n\n#### Issue\n{claim.issue_description}\n"
    if claim.image_url:
        md += f"\nImage: {claim.image_url}\n"
    return md
