from textual.message import Message


class QuitRequestedMessage(Message):
    """
    broadcasted when the console is about to quit
    """

    bubble = True


class OrdersChangedMessage(Message):
    """
    Fired after an operator action or a sweep touched orders.
    Listened to by the order management screen to reload its table.
    """

    bubble = True


class ClaimsChangedMessage(Message):
    """
    Fired when a claim status was changed, so the claims screen can refresh
    """

    bubble = True


class SweepFinishedMessage(Message):
    """
    posted to the active screen when a round of background sweeps completed
    """

    bubble = True

    def __init__(self, results: dict) -> None:
        super().__init__()
        self.results = results


class ModeSwitchedMessage(Message):
    """
    fired whenever switch_mode is called
    must be fired from app level
    """

    bubble = True

    def __init__(self, old_mode: str, new_mode: str) -> None:
        super().__init__()
        self.old_mode = old_mode
        self.new_mode = new_mode
