"""Tests for proc_connector module."""

import errno
import queue
import socket
import struct
import threading
import time
import pytest

from procwatch.config import MonitorConfig
from procwatch.exceptions import SubscriptionError
from procwatch.models import ProcessAction, ProcessInfo
from procwatch.proc_connector import (
    CN_IDX_PROC,
    CN_MSG,
    CN_VAL_PROC,
    NLMSG_DONE,
    NLMSGHDR,
    PROC_CN_MCAST_IGNORE,
    PROC_CN_MCAST_LISTEN,
    PROC_EVENT_EXEC,
    PROC_EVENT_EXIT,
    PROC_EVENT_FORK,
    PROC_EVENT_HEADER,
    PROC_EVENT_NONE,
    ConnectorEvent,
    ProcConnectorEventSource,
    _await_ack,
    build_control_message,
    parse_ack,
    parse_proc_events,
)


def _pair(a, b):
    return struct.pack("=II", a, b)


def _message(what, data, idx=CN_IDX_PROC):
    body = PROC_EVENT_HEADER.pack(what, 0, 123456789) + data
    cn = CN_MSG.pack(idx, CN_VAL_PROC, 0, 0, len(body), 0) + body
    msg = NLMSGHDR.pack(NLMSGHDR.size + len(cn), NLMSG_DONE, 0, 0, 0) + cn
    return msg + b"\0" * (-len(msg) % 4)


def exec_msg(pid, tgid=None):
    return _message(PROC_EVENT_EXEC, _pair(pid, tgid if tgid is not None else pid))


def exit_msg(pid, tgid=None):
    # exit_code and exit_signal follow the pid pair
    data = _pair(pid, tgid if tgid is not None else pid) + b"\0" * 8
    return _message(PROC_EVENT_EXIT, data)


def fork_msg(parent, child):
    return _message(PROC_EVENT_FORK, _pair(parent, parent) + _pair(child, child))


def ack_msg(err):
    return _message(PROC_EVENT_NONE, struct.pack("=i", err))


class FakeSocket:
    """Stands in for a subscribed netlink socket."""

    def __init__(self, *datagrams):
        self.inbox = queue.Queue()
        for datagram in datagrams:
            self.inbox.put(datagram)
        self.sent = []
        self.closed = False

    def feed(self, datagram):
        self.inbox.put(datagram)

    def recv(self, bufsize):
        try:
            return self.inbox.get(timeout=0.05)
        except queue.Empty:
            raise socket.timeout()

    def send(self, data):
        self.sent.append(data)
        return len(data)

    def settimeout(self, timeout):
        pass

    def close(self):
        self.closed = True


class Recorder:
    def __init__(self):
        self.events = []
        self.lock = threading.Lock()

    def __call__(self, event):
        with self.lock:
            self.events.append(event)

    def actions(self):
        with self.lock:
            return [(e.action, e.process_name, e.pid) for e in self.events]


def _describer(table):
    return lambda pid: table.get(pid, (None, ""))


def _source(recorder, table=None, finder=None, socket_factory=None):
    return ProcConnectorEventSource(
        recorder,
        MonitorConfig(),
        finder=finder or (lambda names: []),
        socket_factory=socket_factory or FakeSocket,
        describe=_describer(table if table is not None else {}),
    )


class TestWireFormat:
    """Tests for message encoding and decoding."""

    def test_build_control_message(self):
        data = build_control_message(PROC_CN_MCAST_LISTEN)

        msg_len, msg_type, _flags, _seq, _port = NLMSGHDR.unpack_from(data, 0)
        assert msg_len == len(data) == NLMSGHDR.size + CN_MSG.size + 4
        assert msg_type == NLMSG_DONE

        idx, val, _seq, _ack, length, _flags = CN_MSG.unpack_from(data, NLMSGHDR.size)
        assert (idx, val, length) == (CN_IDX_PROC, CN_VAL_PROC, 4)
        assert data[-4:] == struct.pack("=I", PROC_CN_MCAST_LISTEN)

    def test_parse_exec_and_exit(self):
        events = parse_proc_events(exec_msg(5000) + exit_msg(5000))

        assert events == [
            ConnectorEvent("exec", 5000, 5000),
            ConnectorEvent("exit", 5000, 5000),
        ]

    def test_parse_fork_reports_child(self):
        events = parse_proc_events(fork_msg(1, 42))
        assert events == [ConnectorEvent("fork", 42, 42)]

    def test_thread_events_flagged(self):
        (event,) = parse_proc_events(exec_msg(5001, 5000))
        assert event.is_process is False

    def test_skips_other_connectors(self):
        assert parse_proc_events(_message(PROC_EVENT_EXEC, _pair(1, 1), idx=7)) == []

    def test_skips_truncated_data(self):
        data = exec_msg(5000)
        assert parse_proc_events(data[:-6]) == []
        assert parse_proc_events(b"") == []

    def test_skips_unknown_event_types(self):
        assert parse_proc_events(_message(0x00000004, _pair(1, 1))) == []

    def test_parse_ack(self):
        assert parse_ack(ack_msg(0)) == 0
        assert parse_ack(ack_msg(-errno.EPERM)) == errno.EPERM
        assert parse_ack(exec_msg(1)) is None


class TestAwaitAck:
    """Tests for the subscription acknowledgement handshake."""

    def test_success(self):
        _await_ack(FakeSocket(exec_msg(1), ack_msg(0)), timeout=1.0)

    def test_refused(self):
        with pytest.raises(OSError) as exc_info:
            _await_ack(FakeSocket(ack_msg(errno.EPERM)), timeout=1.0)
        assert exc_info.value.errno == errno.EPERM

    def test_timeout(self):
        with pytest.raises(OSError) as exc_info:
            _await_ack(FakeSocket(), timeout=0.1)
        assert exc_info.value.errno == errno.ETIMEDOUT


class TestHandle:
    """Tests for turning connector events into process events."""

    def _running(self, table, watch=("notepad",)):
        recorder = Recorder()
        source = _source(recorder, table)
        source.update_watch_list(watch)
        return source, recorder

    def test_exec_of_watched_process(self):
        source, recorder = self._running({5000: ("notepad", "/usr/bin/notepad")})

        source.handle(ConnectorEvent("exec", 5000, 5000))

        assert recorder.actions() == [(ProcessAction.STARTED, "notepad", 5000)]
        assert recorder.events[0].executable_path == "/usr/bin/notepad"
        assert source.known_pids() == {5000: "notepad"}

    def test_exit_of_known_process(self):
        source, recorder = self._running({5000: ("notepad", "")})
        source.handle(ConnectorEvent("exec", 5000, 5000))

        source.handle(ConnectorEvent("exit", 5000, 5000))

        assert recorder.actions() == [
            (ProcessAction.STARTED, "notepad", 5000),
            (ProcessAction.STOPPED, "notepad", 5000),
        ]
        assert recorder.events[1].executable_path == ""
        assert source.known_pids() == {}

    def test_exit_of_unknown_process_ignored(self):
        source, recorder = self._running({})
        source.handle(ConnectorEvent("exit", 5000, 5000))
        assert recorder.actions() == []

    def test_unwatched_process_ignored(self):
        source, recorder = self._running({5000: ("chrome", "/usr/bin/chrome")})
        source.handle(ConnectorEvent("exec", 5000, 5000))
        assert recorder.actions() == []

    def test_threads_ignored(self):
        source, recorder = self._running({5000: ("notepad", "")})
        source.handle(ConnectorEvent("exec", 5001, 5000))
        assert recorder.actions() == []

    def test_repeated_exec_reported_once(self):
        source, recorder = self._running({5000: ("notepad", "")})

        source.handle(ConnectorEvent("fork", 5000, 5000))
        source.handle(ConnectorEvent("exec", 5000, 5000))

        assert recorder.actions() == [(ProcessAction.STARTED, "notepad", 5000)]

    def test_exec_into_other_program_stops_previous(self):
        table = {5000: ("notepad", "")}
        source, recorder = self._running(table)
        source.handle(ConnectorEvent("fork", 5000, 5000))

        table[5000] = ("sh", "/bin/sh")
        source.handle(ConnectorEvent("exec", 5000, 5000))

        assert recorder.actions() == [
            (ProcessAction.STARTED, "notepad", 5000),
            (ProcessAction.STOPPED, "notepad", 5000),
        ]

    def test_process_gone_before_describe(self):
        source, recorder = self._running({})
        source.handle(ConnectorEvent("exec", 5000, 5000))
        assert recorder.actions() == []

    def test_empty_watch_list_skips_describe(self):
        calls = []
        source = ProcConnectorEventSource(
            Recorder(), MonitorConfig(), finder=lambda names: [], socket_factory=FakeSocket,
            describe=lambda pid: calls.append(pid) or (None, ""),
        )
        source.handle(ConnectorEvent("exec", 5000, 5000))
        assert calls == []


class TestReconcile:
    """Tests for reporting already-running processes."""

    def test_reports_running_once(self):
        recorder = Recorder()
        finder = lambda names: [ProcessInfo(1, "notepad", "/bin/notepad"), ProcessInfo(2, "chrome")]
        source = _source(recorder, {1: ("notepad", "/bin/notepad")}, finder=finder)
        source.update_watch_list(["notepad"])

        source.reconcile(["notepad"])
        source.reconcile(["notepad"])
        source.handle(ConnectorEvent("exec", 1, 1))

        assert recorder.actions() == [(ProcessAction.STARTED, "notepad", 1)]

    def test_empty_names(self):
        recorder = Recorder()
        calls = []
        source = _source(recorder, finder=lambda names: calls.append(names) or [])
        source.reconcile([])
        assert calls == []


class TestLifecycle:
    """Tests for subscribing, re-subscribing and stopping."""

    def test_subscription_refused(self):
        def refuse():
            raise PermissionError(errno.EPERM, "Operation not permitted")

        source = _source(Recorder(), socket_factory=refuse)

        with pytest.raises(SubscriptionError):
            source.start(["notepad"])
        assert source.is_running is False

    def test_subscription_os_error(self):
        def fail():
            raise OSError(errno.EPROTONOSUPPORT, "Protocol not supported")

        source = _source(Recorder(), socket_factory=fail)

        with pytest.raises(SubscriptionError):
            source.start(["notepad"])

    def test_events_from_socket(self):
        sock = FakeSocket()
        recorder = Recorder()
        source = _source(recorder, {5000: ("notepad", "/bin/notepad")}, socket_factory=lambda: sock)

        source.start(["notepad"])
        try:
            sock.feed(exec_msg(5000))
            time.sleep(0.2)
            sock.feed(exit_msg(5000))
            time.sleep(0.2)
        finally:
            source.stop()

        assert recorder.actions() == [
            (ProcessAction.STARTED, "notepad", 5000),
            (ProcessAction.STOPPED, "notepad", 5000),
        ]

    def test_stop_unsubscribes(self):
        sock = FakeSocket()
        source = _source(Recorder(), socket_factory=lambda: sock)
        source.start(["notepad"])

        source.stop()
        source.stop()

        assert sock.sent == [build_control_message(PROC_CN_MCAST_IGNORE)]
        assert sock.closed is True
        assert source.is_running is False

    def test_update_watch_list_resubscribes(self):
        sockets = [FakeSocket(), FakeSocket()]
        source = _source(
            Recorder(), {1: ("notepad", ""), 2: ("chrome", "")},
            socket_factory=lambda: sockets.pop(0),
        )
        source.start(["notepad", "chrome"])
        first = source._sock
        source.handle(ConnectorEvent("exec", 1, 1))
        source.handle(ConnectorEvent("exec", 2, 2))

        source.update_watch_list(["chrome"])
        try:
            assert first.closed is True
            assert source._sock is not first
            assert source.known_pids() == {2: "chrome"}
        finally:
            source.stop()

    def test_failed_resubscribe_keeps_socket(self, caplog):
        calls = []

        def factory():
            calls.append(1)
            if len(calls) > 1:
                raise OSError(errno.ENOBUFS, "No buffer space available")
            return FakeSocket()

        source = _source(Recorder(), socket_factory=factory)
        source.start(["notepad"])
        first = source._sock

        source.update_watch_list(["notepad", "chrome"])
        try:
            assert source._sock is first
            assert first.closed is False
            assert "keeping previous subscription" in caplog.text
        finally:
            source.stop()
