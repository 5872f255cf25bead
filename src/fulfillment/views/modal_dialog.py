from typing import Dict, Literal, Optional, Tuple

from typing_extensions import override

from textual import on
from textual.app import ComposeResult
from textual.containers import Container, Horizontal
from textual.screen import ModalScreen
from textual.widgets import Button, Input, Label

from fulfillment.utils.messages import QuitRequestedMessage


class DialogModal(ModalScreen[bool]):
    """
    Yes/no confirmation used before any privileged order or claim change.
    """

    DEFAULT_CSS = """
    DialogModal {
        align: center middle;
    }
    #div-dialog {
        width: 60;
        height: auto;
        border: thick $primary;
        padding: 1 2;
        background: $surface;
    }
    #dialog {
        height: auto;
        align: right middle;
    }
    """

    VARIANT_MAP: Dict[
        str, Tuple[Literal["primary", "default", "success", "warning", "error"], ...]
    ] = {
        "default": ("primary", "default"),
        "positive": ("success", "default"),
        "warning": ("warning", "default"),
        "error": ("error", "primary"),
    }

    def __init__(
        self,
        caption: str,
        primary_text: str = "OK",
        secondary_text: str = "",
        tone: Literal["default", "positive", "warning", "error"] = "default",
    ):
        super().__init__()
        self.caption = caption
        self.primary_text = primary_text
        self.secondary_text = secondary_text
        self.tone = tone

    def compose(self) -> ComposeResult:
        with Container(id="div-dialog"):
            yield Label(self.caption, id="caption")
            with Horizontal(id="dialog"):
                if self.secondary_text:
                    yield Button(
                        self.secondary_text,
                        variant=DialogModal.VARIANT_MAP[self.tone][1],
                        id="btn-secondary",
                    )
                yield Button(
                    self.primary_text,
                    variant=DialogModal.VARIANT_MAP[self.tone][0],
                    id="btn-primary",
                )

    def on_mount(self):
        # destructive prompts focus the safe button
        if self.secondary_text and self.tone == "error":
            self.query_one("#btn-secondary").focus()
        else:
            self.query_one("#btn-primary").focus()

    def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "btn-primary":
            self.dismiss(True)
        if event.button.id == "btn-secondary":
            self.dismiss(False)


class QuitDialogModal(DialogModal):
    def __init__(self):
        super().__init__("Quit the fulfillment console?", "Yes", "No", "error")

    @override
    def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "btn-primary":
            self.post_message(QuitRequestedMessage())
            self.dismiss(True)
        else:
            self.dismiss(False)


class PromptModal(ModalScreen[Optional[str]]):
    """
    Single line text prompt (admin notes, payment references). Dismisses with
    the stripped text, "" when left blank, or None when cancelled.
    """

    DEFAULT_CSS = """
    PromptModal {
        align: center middle;
    }
    #div-dialog {
        width: 60;
        height: auto;
        border: thick $primary;
        padding: 1 2;
        background: $surface;
    }
    #dialog {
        height: auto;
        align: right middle;
    }
    """

    def __init__(self, caption: str, placeholder: str = "", initial: str = ""):
        super().__init__()
        self.caption = caption
        self.placeholder = placeholder
        self.initial = initial

    def compose(self) -> ComposeResult:
        with Container(id="div-dialog"):
            yield Label(self.caption)
            yield Input(self.initial, placeholder=self.placeholder, id="input-notes")
            with Horizontal(id="dialog"):
                yield Button("Cancel", id="btn-secondary")
                yield Button("Save", variant="primary", id="btn-primary")

    def on_mount(self):
        self.query_one("#input-notes", Input).focus()

    @on(Input.Submitted, "#input-notes")
    @on(Button.Pressed, "#btn-primary")
    def handle_save(self) -> None:
        self.dismiss(self.query_one("#input-notes", Input).value.strip())

    @on(Button.Pressed, "#btn-secondary")
    def handle_cancel(self) -> None:
        self.dismiss(None)
