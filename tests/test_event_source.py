"""Tests for event_source module."""

import threading
import time
import pytest

import psutil

from procwatch.config import MonitorConfig
from procwatch.event_source import (
    PollingEventSource,
    find_processes,
    match_process_name,
)
from procwatch.models import ProcessAction, ProcessInfo, normalize_process_name


class FakeFinder:
    """Returns a configurable process table filtered by the requested names."""

    def __init__(self):
        self.processes = []
        self.error = None
        self.calls = 0
        self.lock = threading.Lock()

    def set(self, *processes):
        with self.lock:
            self.processes = list(processes)

    def __call__(self, names):
        with self.lock:
            self.calls += 1
            if self.error is not None:
                raise self.error
            return [p for p in self.processes if p.name in names]


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


def _source(finder, recorder=None, interval=0.05):
    config = MonitorConfig(poll_interval_s=interval)
    return PollingEventSource(recorder or Recorder(), config, finder=finder)


class TestMatchProcessName:
    """Tests for match_process_name."""

    def test_plain_name(self):
        assert match_process_name("notepad", None, {"notepad"}) == "notepad"

    def test_case_and_suffix(self):
        assert match_process_name("NOTEPAD.EXE", None, {"notepad"}) == "notepad"

    def test_exe_basename_fallback(self):
        # comm names are truncated to 15 characters on Linux
        assert match_process_name(
            "verylongprocess", "/opt/app/verylongprocessname", ["verylongprocessname"]
        ) == "verylongprocessname"

    def test_no_match(self):
        assert match_process_name("chrome", "/usr/bin/chrome", {"notepad"}) is None

    def test_missing_name_and_exe(self):
        assert match_process_name(None, None, {"notepad"}) is None


class FakeProc:
    def __init__(self, pid, name, exe):
        self.info = {"pid": pid, "name": name, "exe": exe}


class DeniedProc:
    @property
    def info(self):
        raise psutil.AccessDenied(pid=1)


class TestFindProcesses:
    """Tests for find_processes."""

    def test_filters_by_name(self, monkeypatch):
        procs = [
            FakeProc(100, "notepad.exe", "C:\\Windows\\notepad.exe"),
            FakeProc(200, "chrome", "/usr/bin/chrome"),
            FakeProc(300, "Notepad", None),
        ]
        monkeypatch.setattr(psutil, "process_iter", lambda attrs=None: iter(procs))

        found = find_processes(["notepad"])

        assert sorted(p.pid for p in found) == [100, 300]
        assert all(p.name == "notepad" for p in found)
        assert {p.pid: p.exe for p in found}[300] == ""

    def test_skips_inaccessible(self, monkeypatch):
        procs = [DeniedProc(), FakeProc(100, "notepad", "/bin/notepad")]
        monkeypatch.setattr(psutil, "process_iter", lambda attrs=None: iter(procs))

        found = find_processes(["notepad"])

        assert [p.pid for p in found] == [100]

    def test_empty_names(self, monkeypatch):
        def fail(attrs=None):
            raise AssertionError("should not enumerate")

        monkeypatch.setattr(psutil, "process_iter", fail)

        assert find_processes([]) == []

    def test_finds_current_process(self):
        me = psutil.Process()
        found = find_processes([normalize_process_name(me.name())])
        assert me.pid in [p.pid for p in found]


class TestPollingTick:
    """Tests for a single polling iteration."""

    def test_start_then_stop(self):
        finder = FakeFinder()
        recorder = Recorder()
        source = _source(finder, recorder)
        source.update_watch_list(["notepad"])

        assert source.tick() == []

        finder.set(ProcessInfo(5000, "notepad", "/bin/notepad"))
        started = source.tick()
        assert [(e.action, e.pid) for e in started] == [(ProcessAction.STARTED, 5000)]
        assert started[0].executable_path == "/bin/notepad"

        assert source.tick() == []

        finder.set()
        stopped = source.tick()
        assert [(e.action, e.pid) for e in stopped] == [(ProcessAction.STOPPED, 5000)]
        assert stopped[0].executable_path == ""

        assert source.tick() == []
        assert recorder.actions() == [
            (ProcessAction.STARTED, "notepad", 5000),
            (ProcessAction.STOPPED, "notepad", 5000),
        ]

    def test_already_running_reported_on_first_tick(self):
        finder = FakeFinder()
        finder.set(ProcessInfo(1, "notepad"), ProcessInfo(2, "notepad"))
        source = _source(finder)
        source.update_watch_list(["notepad"])

        events = source.tick()

        assert sorted(e.pid for e in events) == [1, 2]
        assert source.tracked_pids("notepad") == [1, 2]

    def test_started_before_stopped(self):
        finder = FakeFinder()
        finder.set(ProcessInfo(1, "notepad"))
        source = _source(finder)
        source.update_watch_list(["notepad"])
        source.tick()

        finder.set(ProcessInfo(2, "notepad"))
        events = source.tick()

        assert [(e.action, e.pid) for e in events] == [
            (ProcessAction.STARTED, 2),
            (ProcessAction.STOPPED, 1),
        ]

    def test_multiple_instances_tracked_separately(self):
        finder = FakeFinder()
        finder.set(ProcessInfo(1, "notepad"), ProcessInfo(2, "notepad"))
        source = _source(finder)
        source.update_watch_list(["notepad"])
        source.tick()

        finder.set(ProcessInfo(2, "notepad"))
        events = source.tick()

        assert [(e.action, e.pid) for e in events] == [(ProcessAction.STOPPED, 1)]

    def test_watch_list_update_keeps_tracked(self):
        finder = FakeFinder()
        finder.set(ProcessInfo(1, "notepad"), ProcessInfo(7, "chrome"))
        source = _source(finder)
        source.update_watch_list(["notepad"])
        source.tick()

        source.update_watch_list(["chrome", "notepad"])
        events = source.tick()

        assert [(e.action, e.process_name, e.pid) for e in events] == [
            (ProcessAction.STARTED, "chrome", 7),
        ]

    def test_removed_name_dropped_without_stop(self):
        finder = FakeFinder()
        finder.set(ProcessInfo(1, "notepad"))
        source = _source(finder)
        source.update_watch_list(["notepad"])
        source.tick()

        source.update_watch_list([])
        finder.set()
        assert source.tick() == []
        assert source.tracked_pids("notepad") == []

    def test_callback_error_does_not_break_tick(self):
        def broken(event):
            raise RuntimeError("callback failed")

        finder = FakeFinder()
        finder.set(ProcessInfo(1, "notepad"))
        source = PollingEventSource(broken, MonitorConfig(), finder=finder)
        source.update_watch_list(["notepad"])

        events = source.tick()

        assert len(events) == 1
        assert source.tracked_pids("notepad") == [1]


class TestPollingLoop:
    """Tests for the background polling loop."""

    def test_reports_start_and_stop(self):
        finder = FakeFinder()
        recorder = Recorder()
        source = _source(finder, recorder)
        source.start(["notepad"])
        try:
            time.sleep(0.15)
            finder.set(ProcessInfo(5000, "notepad"))
            time.sleep(0.3)
            finder.set()
            time.sleep(0.3)
        finally:
            source.stop()

        assert recorder.actions() == [
            (ProcessAction.STARTED, "notepad", 5000),
            (ProcessAction.STOPPED, "notepad", 5000),
        ]

    def test_survives_finder_errors(self):
        finder = FakeFinder()
        finder.error = RuntimeError("enumeration failed")
        recorder = Recorder()
        source = _source(finder, recorder)
        source.start(["notepad"])
        try:
            time.sleep(0.3)
            assert source.failures >= 1
            finder.error = None
            finder.set(ProcessInfo(1, "notepad"))
            time.sleep(0.4)
        finally:
            source.stop()

        assert recorder.actions() == [(ProcessAction.STARTED, "notepad", 1)]

    def test_idles_with_empty_watch_list(self):
        finder = FakeFinder()
        source = _source(finder)
        source.start([])
        time.sleep(0.2)
        source.stop()

        assert finder.calls == 0
        assert source.ticks == 0

    def test_start_stop(self):
        source = _source(FakeFinder())

        source.start(["notepad"])
        assert source.is_running is True

        source.stop()
        source.stop()
        assert source.is_running is False

    def test_reconcile_is_noop(self):
        finder = FakeFinder()
        finder.set(ProcessInfo(1, "notepad"))
        recorder = Recorder()
        source = _source(finder, recorder)
        source.update_watch_list(["notepad"])

        source.reconcile(["notepad"])

        assert recorder.actions() == []
        assert finder.calls == 0
