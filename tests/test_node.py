import asyncio

from takrelay.node import ParticipantRegistry, RelayServer, broadcast

MESSAGE = b"<event uid='x'><detail/></event>"


def test_add_registers_in_order(make_writer):
    registry = ParticipantRegistry()
    writers = [make_writer(n) for n in ("a", "b", "c")]
    for w in writers:
        assert registry.add(w) is not None
    seen = []
    registry.for_each_active(lambda p: seen.append(p.handle))
    assert seen == writers
    assert registry.participant_count == 3


def test_duplicate_handle_is_ignored(make_writer):
    registry = ParticipantRegistry()
    w = make_writer("a")
    first = registry.add(w)
    assert registry.add(w) is None
    assert registry.get(w) is first
    assert registry.participant_count == 1


def test_new_participant_starts_open_with_empty_buffer(make_writer):
    registry = ParticipantRegistry()
    p = registry.add(make_writer("a"))
    assert p.closed is False
    assert p.stream.length == 0
    assert p.peer == "('a', 4242)"


def test_for_each_active_still_visits_closed(make_writer):
    registry = ParticipantRegistry()
    a, b = make_writer("a"), make_writer("b")
    registry.add(a)
    registry.add(b)
    registry.mark_closed(a)
    visited = []
    registry.for_each_active(lambda p: visited.append((p.handle.name, p.closed)))
    assert visited == [("a", True), ("b", False)]


def test_marking_during_a_pass_does_not_remove(make_writer):
    registry = ParticipantRegistry()
    writers = [make_writer(n) for n in "abc"]
    for w in writers:
        registry.add(w)
    visited = []

    def visit(p):
        visited.append(p.handle.name)
        registry.mark_closed(writers[1])

    registry.for_each_active(visit)
    assert visited == ["a", "b", "c"]
    assert registry.participant_count == 3


def test_sweep_removes_and_closes_only_closed(make_writer):
    registry = ParticipantRegistry()
    a, b, c = make_writer("a"), make_writer("b"), make_writer("c")
    for w in (a, b, c):
        registry.add(w)
    registry.mark_closed(b)
    removed = registry.sweep()
    assert [p.handle for p in removed] == [b]
    assert b.close_calls == 1
    assert a.close_calls == 0 and c.close_calls == 0
    assert b not in registry
    assert registry.participant_count == 2
    assert registry.sweep() == []


def test_count_tracks_live_entries(make_writer):
    registry = ParticipantRegistry()
    writers = [make_writer(str(i)) for i in range(6)]
    for w in writers:
        registry.add(w)
    registry.mark_closed(writers[0])
    registry.mark_closed(writers[3])
    registry.sweep()
    registry.add(make_writer("late"))
    registry.mark_closed(writers[5])
    registry.sweep()
    live = []
    registry.for_each_active(lambda p: live.append(p.handle.name))
    assert live == ["1", "2", "4", "late"]
    assert registry.participant_count == len(live)


def test_close_all_ignores_closed_state(make_writer):
    registry = ParticipantRegistry()
    a, b = make_writer("a"), make_writer("b")
    registry.add(a)
    registry.add(b)
    registry.mark_closed(a)
    removed = registry.close_all()
    assert len(removed) == 2
    assert registry.participant_count == 0
    assert a.aborted and b.aborted


def test_broadcast_reaches_everyone_including_sender(make_writer):
    registry = ParticipantRegistry()
    writers = [make_writer(n) for n in ("sender", "b", "c")]
    for w in writers:
        registry.add(w)
    assert broadcast(MESSAGE, registry) == 3
    for w in writers:
        assert w.sent == [MESSAGE]


def test_broadcast_failure_is_isolated(make_writer):
    registry = ParticipantRegistry()
    a, bad, c = make_writer("a"), make_writer("bad", fail=True), make_writer("c")
    for w in (a, bad, c):
        registry.add(w)
    assert broadcast(MESSAGE, registry) == 2
    assert a.sent == [MESSAGE]
    assert c.sent == [MESSAGE]
    assert registry.get(bad).closed is True
    assert registry.get(a).closed is False
    assert registry.get(c).closed is False
    registry.sweep()
    assert bad not in registry
    assert registry.participant_count == 2


def test_broadcast_to_invalid_socket_marks_it_closed(make_writer):
    registry = ParticipantRegistry()
    a, b = make_writer("A"), make_writer("B", closing=True)
    registry.add(a)
    registry.add(b)
    broadcast(MESSAGE, registry)
    assert registry.get(b).closed is True
    assert b.sent == []
    assert a.sent == [MESSAGE]
    registry.sweep()
    assert b not in registry
    assert a in registry
    assert registry.get(a).closed is False


def test_closed_participants_get_nothing(make_writer):
    registry = ParticipantRegistry()
    a, b = make_writer("a"), make_writer("b")
    registry.add(a)
    registry.add(b)
    registry.mark_closed(b)
    assert broadcast(MESSAGE, registry) == 1
    assert b.sent == []


def test_broadcast_to_empty_registry():
    assert broadcast(MESSAGE, ParticipantRegistry()) == 0


def test_duplicate_connection_leaves_existing_entry_open(make_writer):
    server = RelayServer("127.0.0.1", 0)
    w = make_writer("a")
    first = server.registry.add(w)
    asyncio.run(server.handle_conn(None, w))
    assert server.registry.get(w) is first
    assert first.closed is False
    assert w.close_calls == 0
