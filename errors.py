class NotFoundError(ValueError):
    pass


class ConflictError(ValueError):
    pass


class StoreError(RuntimeError):
    pass


class ReconciliationError(RuntimeError):
    def __init__(self, event_key: str, message: str) -> None:
        super().__init__(f"{event_key}: {message}")
        self.event_key = event_key
