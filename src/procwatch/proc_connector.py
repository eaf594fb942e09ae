"""Native process notifications via the Linux netlink process-events connector."""

import errno
import logging
import os
import socket
import struct
import sys
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterator, List, Optional, Sequence, Tuple

from .config import MonitorConfig
from .event_source import EventSource, ProcessFinder, describe_process, match_process_name
from .exceptions import SubscriptionError
from .models import ProcessEvent, ProcessInfo

logger = logging.getLogger(__name__)

NETLINK_CONNECTOR = 11
CN_IDX_PROC = 1
CN_VAL_PROC = 1

NLMSG_NOOP = 1
NLMSG_ERROR = 2
NLMSG_DONE = 3

PROC_CN_MCAST_LISTEN = 1
PROC_CN_MCAST_IGNORE = 2

PROC_EVENT_NONE = 0x00000000
PROC_EVENT_FORK = 0x00000001
PROC_EVENT_EXEC = 0x00000002
PROC_EVENT_EXIT = 0x80000000

NLMSGHDR = struct.Struct("=IHHII")
CN_MSG = struct.Struct("=IIIIHH")
PROC_EVENT_HEADER = struct.Struct("=IIQ")
PID_PAIR = struct.Struct("=II")
FORK_DATA = struct.Struct("=IIII")
ACK_DATA = struct.Struct("=i")

RECV_BUFFER = 65536
RECV_TIMEOUT_S = 0.5
ACK_TIMEOUT_S = 1.0


@dataclass(frozen=True)
class ConnectorEvent:
    """
    A decoded process-events connector message.

    Attributes:
        kind: "fork", "exec" or "exit"
        pid: Thread ID the event refers to (the child for forks)
        tgid: Thread-group (process) ID
    """
    kind: str
    pid: int
    tgid: int

    @property
    def is_process(self) -> bool:
        """True for thread-group leaders, i.e. processes rather than threads."""
        return self.pid == self.tgid


def build_control_message(op: int = PROC_CN_MCAST_LISTEN, port_id: int = 0, seq: int = 0) -> bytes:
    """
    Build the netlink message that (un)subscribes from process events.

    Args:
        op: PROC_CN_MCAST_LISTEN or PROC_CN_MCAST_IGNORE
        port_id: Netlink port ID of the sender
        seq: Sequence number

    Returns:
        The encoded nlmsghdr + cn_msg + op
    """
    op_bytes = struct.pack("=I", op)
    cn_msg = CN_MSG.pack(CN_IDX_PROC, CN_VAL_PROC, seq, 0, len(op_bytes), 0) + op_bytes
    header = NLMSGHDR.pack(NLMSGHDR.size + len(cn_msg), NLMSG_DONE, 0, seq, port_id)
    return header + cn_msg


def _iter_proc_payloads(data: bytes) -> Iterator[Tuple[int, bytes]]:
    """Yield (what, event_data) for every proc connector message in a datagram."""
    offset = 0

    while offset + NLMSGHDR.size <= len(data):
        msg_len, msg_type, _flags, _seq, _port = NLMSGHDR.unpack_from(data, offset)
        if msg_len < NLMSGHDR.size or offset + msg_len > len(data):
            break

        payload = data[offset + NLMSGHDR.size: offset + msg_len]
        offset += (msg_len + 3) & ~3

        if msg_type in (NLMSG_NOOP, NLMSG_ERROR) or len(payload) < CN_MSG.size:
            continue

        idx, val, _cn_seq, _ack, length, _cn_flags = CN_MSG.unpack_from(payload, 0)
        if idx != CN_IDX_PROC or val != CN_VAL_PROC:
            continue

        body = payload[CN_MSG.size: CN_MSG.size + length]
        if len(body) < PROC_EVENT_HEADER.size:
            continue

        what, _cpu, _timestamp_ns = PROC_EVENT_HEADER.unpack_from(body, 0)
        yield what, body[PROC_EVENT_HEADER.size:]


def parse_proc_events(data: bytes) -> List[ConnectorEvent]:
    """
    Decode fork, exec and exit events from a netlink datagram.

    Other event types and malformed messages are skipped.

    Args:
        data: Raw datagram as received from the socket

    Returns:
        Decoded events in datagram order
    """
    events: List[ConnectorEvent] = []

    for what, event_data in _iter_proc_payloads(data):
        if what == PROC_EVENT_FORK and len(event_data) >= FORK_DATA.size:
            _parent_pid, _parent_tgid, child_pid, child_tgid = FORK_DATA.unpack_from(event_data, 0)
            events.append(ConnectorEvent("fork", child_pid, child_tgid))
        elif what == PROC_EVENT_EXEC and len(event_data) >= PID_PAIR.size:
            pid, tgid = PID_PAIR.unpack_from(event_data, 0)
            events.append(ConnectorEvent("exec", pid, tgid))
        elif what == PROC_EVENT_EXIT and len(event_data) >= PID_PAIR.size:
            pid, tgid = PID_PAIR.unpack_from(event_data, 0)
            events.append(ConnectorEvent("exit", pid, tgid))

    return events


def parse_ack(data: bytes) -> Optional[int]:
    """
    Find the kernel's acknowledgement of a subscription request.

    Args:
        data: Raw datagram as received from the socket

    Returns:
        The acknowledged error code (0 on success), or None if the
        datagram holds no acknowledgement
    """
    for what, event_data in _iter_proc_payloads(data):
        if what == PROC_EVENT_NONE and len(event_data) >= ACK_DATA.size:
            (err,) = ACK_DATA.unpack_from(event_data, 0)
            return abs(err)
    return None


def _await_ack(sock: socket.socket, timeout: float = ACK_TIMEOUT_S) -> None:
    """
    Wait for the kernel to acknowledge PROC_CN_MCAST_LISTEN.

    Raises:
        OSError: If the kernel refused the subscription or never answered
    """
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise OSError(errno.ETIMEDOUT, "no acknowledgement from process events connector")
        sock.settimeout(remaining)
        try:
            data = sock.recv(RECV_BUFFER)
        except socket.timeout:
            continue
        err = parse_ack(data)
        if err is None:
            continue
        if err != 0:
            raise OSError(err, os.strerror(err))
        return


def _open_connector_socket() -> socket.socket:
    sock = socket.socket(socket.AF_NETLINK, socket.SOCK_DGRAM, NETLINK_CONNECTOR)
    try:
        sock.bind((0, CN_IDX_PROC))
        sock.send(build_control_message(PROC_CN_MCAST_LISTEN))
        _await_ack(sock)
        sock.settimeout(RECV_TIMEOUT_S)
    except Exception:
        sock.close()
        raise
    return sock


def _platform_unsupported(factory: Callable[[], socket.socket]) -> bool:
    """The default factory needs Linux netlink sockets."""
    if factory is not _open_connector_socket:
        return False
    return not sys.platform.startswith("linux") or not hasattr(socket, "AF_NETLINK")


class ProcConnectorEventSource(EventSource):
    """
    Event source backed by the kernel's process-events connector.

    Requires Linux and CAP_NET_ADMIN; start() raises SubscriptionError
    otherwise so the controller can fall back to polling. Kernel messages
    carry only PIDs, so names are resolved with psutil as events arrive and
    remembered until the process exits.
    """

    name = "native"

    def __init__(
        self,
        on_event: Callable[[ProcessEvent], None],
        config: Optional[MonitorConfig] = None,
        finder: Optional[ProcessFinder] = None,
        socket_factory: Optional[Callable[[], socket.socket]] = None,
        describe: Callable[[int], Tuple[Optional[str], str]] = describe_process,
    ):
        """
        Initialize the source.

        Args:
            on_event: Callback receiving each ProcessEvent
            config: Monitor configuration
            finder: Process enumerator used for reconciliation
            socket_factory: Opens a subscribed connector socket
            describe: Resolves a PID to (name, exe)
        """
        super().__init__(on_event, config, finder)
        self.socket_factory = socket_factory or _open_connector_socket
        self.describe = describe
        self._watch_set: FrozenSet[str] = frozenset()
        self._known: Dict[int, str] = {}
        self._sock: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()

    def _subscribe(self) -> socket.socket:
        if _platform_unsupported(self.socket_factory):
            raise SubscriptionError(f"Process events connector is not available on {sys.platform}")
        try:
            return self.socket_factory()
        except PermissionError as e:
            raise SubscriptionError(f"Process events connector requires CAP_NET_ADMIN: {e}") from e
        except (AttributeError, OSError) as e:
            raise SubscriptionError(f"Cannot subscribe to process events: {e}") from e

    def start(self, watch_list: Sequence[str]) -> None:
        with self._lock:
            if self._thread is not None:
                return
            self._watch_set = frozenset(watch_list)
            self._sock = self._subscribe()
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._reader_loop, name="ProcConnectorReader", daemon=True)
            self._thread.start()
        logger.info(f"Subscribed to process events for {len(self._watch_set)} process name(s)")

    def update_watch_list(self, watch_list: Sequence[str]) -> None:
        watch_set = frozenset(watch_list)
        with self._lock:
            self._watch_set = watch_set
            for pid in [p for p, name in self._known.items() if name not in watch_set]:
                del self._known[pid]
            if self._thread is None:
                return

        try:
            new_sock = self._subscribe()
        except SubscriptionError as e:
            logger.error(f"Re-subscribing to process events failed, keeping previous subscription: {e}")
            return

        with self._lock:
            old_sock, self._sock = self._sock, new_sock
        if old_sock is not None:
            old_sock.close()
        logger.debug(f"Re-subscribed to process events for {sorted(watch_set)}")

    def reconcile(self, names: Sequence[str]) -> None:
        if not names:
            return
        for info in self.finder(names):
            with self._lock:
                if info.name not in self._watch_set or self._known.get(info.pid) == info.name:
                    continue
                self._known[info.pid] = info.name
            self._emit(ProcessEvent.started(info))

    def stop(self) -> None:
        self._stop_event.set()
        with self._lock:
            thread, self._thread = self._thread, None
            sock, self._sock = self._sock, None
            self._known.clear()

        if sock is not None:
            try:
                sock.send(build_control_message(PROC_CN_MCAST_IGNORE))
            except OSError:
                pass
            sock.close()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None

    def known_pids(self) -> Dict[int, str]:
        """Snapshot of PIDs reported as Started and not yet Stopped."""
        with self._lock:
            return dict(self._known)

    def handle(self, event: ConnectorEvent) -> None:
        """
        Turn a decoded connector event into ProcessEvents.

        Args:
            event: Decoded fork/exec/exit event
        """
        if not event.is_process:
            return

        if event.kind == "exit":
            with self._lock:
                name = self._known.pop(event.tgid, None)
            if name is not None:
                self._emit(ProcessEvent.stopped(name, event.tgid))
            return

        with self._lock:
            watch_set = self._watch_set
            previous = self._known.get(event.tgid)
        if not watch_set and previous is None:
            return

        proc_name, exe = self.describe(event.tgid)
        if proc_name is None:
            logger.debug(f"Process {event.tgid} exited before it could be described")
            return
        matched = match_process_name(proc_name, exe, watch_set, self.config.executable_suffixes)

        emitted: List[ProcessEvent] = []
        with self._lock:
            previous = self._known.get(event.tgid)
            if previous == matched:
                return
            if previous is not None:
                del self._known[event.tgid]
                emitted.append(ProcessEvent.stopped(previous, event.tgid))
            if matched is not None:
                self._known[event.tgid] = matched
                emitted.append(ProcessEvent.started(ProcessInfo(pid=event.tgid, name=matched, exe=exe)))

        for process_event in emitted:
            self._emit(process_event)

    def _reader_loop(self) -> None:
        logger.debug("Process events reader started")
        while not self._stop_event.is_set():
            with self._lock:
                sock = self._sock
            if sock is None:
                break

            try:
                data = sock.recv(RECV_BUFFER)
            except socket.timeout:
                continue
            except OSError as e:
                if self._stop_event.is_set():
                    break
                with self._lock:
                    replaced = sock is not self._sock
                if replaced:
                    continue
                if e.errno == errno.ENOBUFS:
                    logger.warning("Process events receive buffer overrun, some events were lost")
                    continue
                logger.error(f"Process events receive failed: {e}")
                self._stop_event.wait(timeout=RECV_TIMEOUT_S)
                continue

            for event in parse_proc_events(data):
                try:
                    self.handle(event)
                except Exception as e:
                    logger.error(f"Failed to handle process event {event}: {e}")
        logger.debug("Process events reader stopped")

