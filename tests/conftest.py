import pytest


class FakeWriter:
    """Stand-in for asyncio.StreamWriter that records what was written."""
    def __init__(self, name: str, fail: bool = False, closing: bool = False) -> None:
        self.name = name
        self.fail = fail
        self.closing = closing
        self.sent = []
        self.close_calls = 0
        self.aborted = False

    def get_extra_info(self, key, default=None):
        if key == "peername":
            return (self.name, 4242)
        return default

    def is_closing(self) -> bool:
        return self.closing

    def write(self, data: bytes) -> None:
        if self.fail:
            raise BrokenPipeError(32, "Broken pipe")
        self.sent.append(bytes(data))

    def close(self) -> None:
        self.closing = True
        self.close_calls += 1

    @property
    def transport(self):
        return self

    def abort(self) -> None:
        self.closing = True
        self.aborted = True


@pytest.fixture
def make_writer():
    return FakeWriter
