from .errors import IdAllocationError, StorageError
from .storage import U64_MAX, LedgerStorage


class IdAllocator:
    """Issues strictly increasing u64 ids from a persisted counter.

    The counter holds the next id to hand out. It is advanced and persisted
    before the id is returned, so an id is never issued twice even across
    restarts.
    """

    def __init__(self, storage: LedgerStorage, name: str = "ids"):
        self._counter = storage.counter(name)
        self.name = name

    def next_id(self) -> int:
        try:
            current = self._counter.get()
        except StorageError as e:
            raise IdAllocationError(f"Cannot read id counter {self.name!r}: {e}") from e
        if current >= U64_MAX:
            raise IdAllocationError(f"Id counter {self.name!r} exhausted")
        try:
            self._counter.set(current + 1)
        except StorageError as e:
            raise IdAllocationError(f"Cannot increment id counter {self.name!r}: {e}") from e
        return current
