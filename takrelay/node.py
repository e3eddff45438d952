import asyncio
from typing import Any, Callable, Dict, List, Optional

from takrelay.framing import BUFFER_CHUNK_SIZE, TERMINATOR, StreamBuffer

"""
node.py: participant bookkeeping, fan-out and the relay event loop.

How it hangs together:
- Every accepted connection becomes a Participant in the registry.
- A reader task per connection feeds received chunks to that participant's
  StreamBuffer; each complete message is broadcast to everyone (sender too).
- Failures never touch other connections: the participant is only *marked*
  closed. The supervisor loop sweeps marked entries between passes, so an
  iteration over the registry never sees an entry vanish under it.

Everything runs on one asyncio loop thread, so no locking is needed.
"""

DEFAULT_TICK = 0.1  # seconds between shutdown checks / sweeps


class Participant:
    """One connected client: its writer (the handle), buffer and closed flag."""
    def __init__(self, handle: asyncio.StreamWriter, terminator: bytes = TERMINATOR,
                 chunk_size: int = BUFFER_CHUNK_SIZE) -> None:
        self.handle = handle
        self.closed = False
        self.stream = StreamBuffer(terminator, chunk_size)
        self.peer = str(handle.get_extra_info("peername"))

    def close(self) -> None:
        self.closed = True
        self.handle.close()

    def abort(self) -> None:
        """Drop the connection at once, discarding anything still queued for it."""
        self.closed = True
        self.handle.transport.abort()


class ParticipantRegistry:
    """
    Insertion-ordered map of handle → Participant.

    Marking (``mark_closed``) and removal (``sweep``) are separate phases; never
    sweep while a ``for_each_active`` pass is open.
    """
    def __init__(self, terminator: bytes = TERMINATOR, chunk_size: int = BUFFER_CHUNK_SIZE) -> None:
        self.terminator = terminator
        self.chunk_size = chunk_size
        self._participants: Dict[Any, Participant] = {}

    @property
    def participant_count(self) -> int:
        return len(self._participants)

    def __len__(self) -> int:
        return len(self._participants)

    def __contains__(self, handle: Any) -> bool:
        return handle in self._participants

    def get(self, handle: Any) -> Optional[Participant]:
        return self._participants.get(handle)

    def add(self, handle: Any) -> Optional[Participant]:
        """Register a new connection. Returns None if the handle is already present."""
        if handle in self._participants:
            return None
        participant = Participant(handle, self.terminator, self.chunk_size)
        self._participants[handle] = participant
        return participant

    def for_each_active(self, fn: Callable[[Participant], None]) -> None:
        """Call ``fn`` once per entry present right now, closed ones included."""
        for participant in list(self._participants.values()):
            fn(participant)

    def mark_closed(self, handle: Any) -> None:
        participant = self._participants.get(handle)
        if participant is not None:
            participant.closed = True

    def sweep(self) -> List[Participant]:
        """Remove every closed entry, closing its transport. Returns what was removed."""
        removed = [p for p in self._participants.values() if p.closed]
        for participant in removed:
            del self._participants[participant.handle]
            participant.close()
        return removed

    def close_all(self) -> List[Participant]:
        """Force-close and remove every entry regardless of state (shutdown)."""
        removed = list(self._participants.values())
        self._participants.clear()
        for participant in removed:
            participant.abort()
        return removed


def broadcast(message: bytes, registry: ParticipantRegistry) -> int:
    """
    One write attempt of ``message`` to every participant, sender included.

    A recipient that is already closed is skipped; one whose transport is
    closing or whose write raises gets marked closed. The rest still receive
    the message.

    Returns:
        Number of participants the message was handed to.
    """
    delivered = 0

    def send(participant: Participant) -> None:
        nonlocal delivered
        if participant.closed:
            return
        writer = participant.handle
        if writer.is_closing():
            participant.closed = True
            return
        try:
            writer.write(message)
        except (OSError, RuntimeError):
            participant.closed = True
            return
        delivered += 1

    registry.for_each_active(send)
    return delivered


class RelayServer:
    """
    TCP relay: accepts participants and echoes every complete message to all.

    ``start()`` binds (raises OSError if the port is taken), ``serve()`` runs
    until ``request_shutdown()`` and then tears every connection down.
    """
    def __init__(self, host: str, port: int, terminator: bytes = TERMINATOR,
                 chunk_size: int = BUFFER_CHUNK_SIZE, tick: float = DEFAULT_TICK) -> None:
        self.host = host
        self.port = port
        self.tick = tick
        self.registry = ParticipantRegistry(terminator, chunk_size)
        self._server: Optional[asyncio.AbstractServer] = None
        self._shutdown: Optional[asyncio.Event] = None
        self._fatal: Optional[BaseException] = None

    @property
    def participant_count(self) -> int:
        return self.registry.participant_count

    async def start(self) -> None:
        """Bind and listen; the chosen port is written back (useful with port 0)."""
        self._shutdown = asyncio.Event()
        self._server = await asyncio.start_server(self.handle_conn, self.host, self.port)
        sockets = self._server.sockets or []
        if sockets:
            self.port = sockets[0].getsockname()[1]
        addrs = ", ".join(str(sock.getsockname()) for sock in sockets)
        print(f"Relay listening on {addrs}")

    def request_shutdown(self) -> None:
        if self._shutdown is not None:
            self._shutdown.set()

    async def serve(self) -> None:
        """Tick until shutdown, sweeping closed participants after every tick."""
        if self._server is None or self._shutdown is None:
            await self.start()
        server, shutdown = self._server, self._shutdown

        try:
            while not shutdown.is_set():
                try:
                    await asyncio.wait_for(shutdown.wait(), timeout=self.tick)
                except asyncio.TimeoutError:
                    pass
                for participant in self.registry.sweep():
                    print(f"Participant {participant.peer} disconnected")
        finally:
            server.close()
            for participant in self.registry.close_all():
                try:
                    await participant.handle.wait_closed()
                except (ConnectionError, OSError):
                    pass
            await server.wait_closed()

        if self._fatal is not None:
            raise self._fatal

    async def handle_conn(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Per-connection reader: drain into the buffer, broadcast each message."""
        participant = self.registry.add(writer)
        if participant is None:
            # Same writer is already being served; its entry owns the transport.
            return
        print(f"Participant connected from {participant.peer}")

        try:
            while not participant.closed:
                data = await reader.read(participant.stream.reserve())
                if not data:
                    break
                for message in participant.stream.feed(data):
                    broadcast(message, self.registry)
        except (ConnectionError, OSError) as exc:
            print(f"Conn error from {participant.peer}: {exc}")
        except MemoryError as exc:
            # Covers BufferAllocationError; not recoverable.
            print(f"FATAL: {exc}")
            self._fatal = exc
            self.request_shutdown()
        finally:
            participant.closed = True
