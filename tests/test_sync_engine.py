"""
Tests for the sync engine: path mapping, swap detection, the event filter and
every transition of the swap/rename state machine.

A FakeFiler records each ContainerFiler call so assertions read as the exact
sequence of remote operations an event burst produces.
"""
import os
import queue
import tempfile
import unittest
from unittest import mock

import paramiko

from appsync.core.events import EventKind, FileEvent, Mode
from appsync.core.sync_engine import Session, SyncEngine, build_filer, detect_swap, run_sync
from appsync.core.tunnel import ForwardSpec
from appsync.exceptions import TransferError, ValidationError, WatchError
from appsync.operations.scp import ScpFiler
from appsync.platform import AppInfo, SSHInfo
from appsync.utils.ignore_patterns import SyncIgnore


# ── Helpers ───────────────────────────────────────────────────────────────────

class FakeFiler:
    def __init__(self):
        self.calls = []
        self.fail_with = None
        self.on_call = None

    def _record(self, *call):
        self.calls.append(call)
        if self.on_call is not None:
            self.on_call(call)
        if self.fail_with is not None:
            raise self.fail_with

    def copy_remote_folder(self, local_root, remote_root):
        self._record("copy_remote_folder", local_root, remote_root)

    def copy_content(self, reader, size, remote_path, mode):
        data = reader.read()
        self._record("copy_content", remote_path, data)

    def create_folders(self, remote_root, relative_dir):
        self._record("create_folders", remote_root, relative_dir)

    def delete(self, remote_path):
        self._record("delete", remote_path)

    def rename(self, old_remote_path, new_remote_path):
        self._record("rename", old_remote_path, new_remote_path)

    def set_progress(self, sink):
        pass


class FakeWatcher:
    def __init__(self, root, events, initial=()):
        self.root = root
        self.events = events
        self.initial = list(initial)
        self.started = False
        self.stopped = False

    def start(self):
        self.started = True
        for event in self.initial:
            self.events.put(event)

    def stop(self):
        self.stopped = True


class EngineTestCase(unittest.TestCase):
    remote_root = "~/app"

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = os.path.realpath(self.tmpdir.name)
        self.filer = FakeFiler()
        self.session = Session(self.root, self.remote_root)
        self.engine = SyncEngine(self.filer, self.session)

    def tearDown(self):
        self.tmpdir.cleanup()

    def path(self, *parts):
        return os.path.join(self.root, *parts)

    def touch(self, *parts, data=b"x"):
        p = self.path(*parts)
        os.makedirs(os.path.dirname(p), exist_ok=True)
        with open(p, "wb") as f:
            f.write(data)
        return p

    def send(self, kind, *parts, dest=None):
        self.engine.handle(FileEvent(self.path(*parts), kind,
                                     self.path(dest) if dest else None))


# ── Tests: Session path mapping ───────────────────────────────────────────────

class TestSession(EngineTestCase):

    def test_to_remote_joins_relative_path(self):
        self.assertEqual(self.session.to_remote(self.path("a", "b.txt")), "~/app/a/b.txt")

    def test_remote_prefix_has_single_trailing_slash(self):
        self.assertEqual(Session(self.root, "~/app/").remote_prefix, "~/app/")
        self.assertEqual(Session(self.root, "app").remote_prefix, "app/")

    def test_relative_uses_forward_slashes(self):
        self.assertEqual(self.session.relative(self.path("x", "y", "z")), "x/y/z")

    def test_to_local_inverts_relative(self):
        self.assertEqual(self.session.to_local("a/b.txt"), self.path("a", "b.txt"))

    def test_missing_root_is_rejected(self):
        with self.assertRaises(ValidationError):
            Session(self.path("nope"), "~/app")

    def test_file_root_is_rejected(self):
        with self.assertRaises(ValidationError):
            Session(self.touch("file.txt"), "~/app")


# ── Tests: swap detection ─────────────────────────────────────────────────────

class TestDetectSwap(EngineTestCase):

    def test_swap_suffix_resolves_to_original(self):
        """'file.txt.swp' (gone) with 'file.txt' present → swap of file.txt."""
        original = self.touch("file.txt")
        self.assertEqual(detect_swap(self.path("file.txt.swp")), (True, original))

    def test_shortened_extension_hit(self):
        original = self.touch("notes.md")
        self.assertEqual(detect_swap(self.path("notes.mdx")), (True, original))

    def test_existing_path_is_not_a_swap(self):
        self.touch("file.txt")
        p = self.touch("file.txt.bak")
        self.assertEqual(detect_swap(p), (False, p))

    def test_trailing_dot_is_not_a_swap(self):
        p = self.path("file.")
        self.assertEqual(detect_swap(p), (False, p))

    def test_no_extension_is_not_a_swap(self):
        self.touch("file")
        p = self.path("other")
        self.assertEqual(detect_swap(p), (False, p))

    def test_no_sibling_is_not_a_swap(self):
        p = self.path("lonely.tmp")
        self.assertEqual(detect_swap(p), (False, p))


# ── Tests: event filter ───────────────────────────────────────────────────────

class TestEventFilter(EngineTestCase):

    def setUp(self):
        super().setUp()
        self.session.ignore = SyncIgnore(["build/", "*.log"])

    def test_editor_swap_extensions_dropped(self):
        self.touch("a.txt.swp")
        self.touch("a.txt.swx")
        self.send(EventKind.CREATE, "a.txt.swp")
        self.send(EventKind.WRITE, "a.txt.swx")
        self.assertEqual(self.filer.calls, [])

    def test_numeric_basename_dropped(self):
        self.touch("4913")
        self.send(EventKind.CREATE, "4913")
        self.send(EventKind.REMOVE, "4913")
        self.assertEqual(self.filer.calls, [])

    def test_ignore_patterns_apply_relative_to_root(self):
        self.touch("build", "out.js")
        self.touch("debug.log")
        self.send(EventKind.CREATE, "build")
        self.send(EventKind.WRITE, "build", "out.js")
        self.send(EventKind.WRITE, "debug.log")
        self.assertEqual(self.filer.calls, [])

    def test_directory_pattern_matches_deleted_directory(self):
        self.session.ignore = SyncIgnore(["node_modules/"])
        self.send(EventKind.REMOVE, "node_modules", "x.js")
        self.engine.handle(FileEvent(self.path("node_modules"), EventKind.REMOVE,
                                     is_directory=True))
        self.engine.handle(FileEvent(self.path("node_modules"), EventKind.RENAME,
                                     self.path("old_modules"), is_directory=True))
        self.assertEqual(self.filer.calls, [])

    def test_directory_pattern_spares_deleted_file_of_same_name(self):
        self.session.ignore = SyncIgnore(["node_modules/"])
        self.send(EventKind.REMOVE, "node_modules")
        self.assertEqual(self.filer.calls, [("delete", "~/app/node_modules")])

    def test_paths_outside_root_dropped(self):
        self.engine.handle(FileEvent(os.path.dirname(self.root) + os.sep + "elsewhere",
                                     EventKind.REMOVE))
        self.engine.handle(FileEvent(self.root, EventKind.WRITE))
        self.assertEqual(self.filer.calls, [])

    def test_regular_file_passes(self):
        self.touch("main.py", data=b"print()")
        self.send(EventKind.WRITE, "main.py")
        self.assertEqual(self.filer.calls, [("copy_content", "~/app/main.py", b"print()")])


# ── Tests: state machine ──────────────────────────────────────────────────────

class TestIdleTransitions(EngineTestCase):

    def test_create_file_uploads(self):
        self.touch("a.txt", data=b"hello")
        self.send(EventKind.CREATE, "a.txt")
        self.assertEqual(self.filer.calls, [("copy_content", "~/app/a.txt", b"hello")])
        self.assertIs(self.engine.state.mode, Mode.IDLE)

    def test_create_directory_creates_folders(self):
        os.makedirs(self.path("x", "y"))
        self.send(EventKind.CREATE, "x", "y")
        self.assertEqual(self.filer.calls, [("create_folders", "~/app", "x/y")])

    def test_create_swap_start_enters_swapping(self):
        original = self.touch("f.txt")
        self.send(EventKind.CREATE, "f.txt~")
        self.assertEqual(self.filer.calls, [])
        self.assertIs(self.engine.state.mode, Mode.SWAPPING)
        self.assertEqual(self.engine.state.swap_target, original)

    def test_write_uploads(self):
        self.touch("a.txt", data=b"v2")
        self.send(EventKind.WRITE, "a.txt")
        self.assertEqual(self.filer.calls, [("copy_content", "~/app/a.txt", b"v2")])

    def test_write_right_after_create_is_not_resent(self):
        self.touch("a.txt", data=b"hello")
        self.send(EventKind.CREATE, "a.txt")
        self.send(EventKind.WRITE, "a.txt")
        self.assertEqual(self.filer.calls, [("copy_content", "~/app/a.txt", b"hello")])

    def test_write_after_create_with_new_content_uploads(self):
        self.touch("a.txt", data=b"v1")
        self.send(EventKind.CREATE, "a.txt")
        self.touch("a.txt", data=b"version two")
        self.send(EventKind.WRITE, "a.txt")
        self.assertEqual(self.filer.calls, [
            ("copy_content", "~/app/a.txt", b"v1"),
            ("copy_content", "~/app/a.txt", b"version two"),
        ])

    def test_only_the_first_write_after_create_is_collapsed(self):
        self.touch("a.txt", data=b"hello")
        self.send(EventKind.CREATE, "a.txt")
        self.send(EventKind.WRITE, "a.txt")
        self.send(EventKind.WRITE, "a.txt")
        self.assertEqual(len(self.filer.calls), 2)

    def test_write_of_other_file_after_create_uploads(self):
        self.touch("a.txt")
        self.touch("b.txt")
        self.send(EventKind.CREATE, "a.txt")
        self.send(EventKind.WRITE, "b.txt")
        self.assertEqual([c[1] for c in self.filer.calls], ["~/app/a.txt", "~/app/b.txt"])

    def test_write_directory_ignored(self):
        os.makedirs(self.path("d"))
        self.send(EventKind.WRITE, "d")
        self.assertEqual(self.filer.calls, [])

    def test_remove_deletes(self):
        self.send(EventKind.REMOVE, "gone.txt")
        self.assertEqual(self.filer.calls, [("delete", "~/app/gone.txt")])

    def test_rename_existing_remembers_source(self):
        src = self.touch("a.txt")
        self.send(EventKind.RENAME, "a.txt")
        self.assertEqual(self.filer.calls, [])
        self.assertIs(self.engine.state.mode, Mode.RENAME_PENDING)
        self.assertEqual(self.engine.state.rename_source, src)

    def test_rename_absent_swap_enters_swapping(self):
        self.touch("f.txt")
        self.send(EventKind.RENAME, "f.txt.tmp")
        self.assertIs(self.engine.state.mode, Mode.SWAPPING)
        self.assertEqual(self.filer.calls, [])

    def test_rename_absent_deletes(self):
        self.send(EventKind.RENAME, "moved-away.txt")
        self.assertEqual(self.filer.calls, [("delete", "~/app/moved-away.txt")])
        self.assertIs(self.engine.state.mode, Mode.IDLE)


class TestRenamePendingTransitions(EngineTestCase):

    def setUp(self):
        super().setUp()
        self.source = self.touch("a.txt")
        self.send(EventKind.RENAME, "a.txt")

    def test_absent_rename_completes_pair(self):
        self.send(EventKind.RENAME, "b.txt")
        self.assertEqual(self.filer.calls, [("rename", "~/app/a.txt", "~/app/b.txt")])
        self.assertIs(self.engine.state.mode, Mode.IDLE)
        self.assertIsNone(self.engine.state.rename_source)

    def test_existing_rename_replaces_source(self):
        other = self.touch("c.txt")
        self.send(EventKind.RENAME, "c.txt")
        self.assertEqual(self.engine.state.rename_source, other)
        self.send(EventKind.RENAME, "d.txt")
        self.assertEqual(self.filer.calls, [("rename", "~/app/c.txt", "~/app/d.txt")])

    def test_other_events_keep_source(self):
        self.touch("new.txt", data=b"n")
        self.send(EventKind.CREATE, "new.txt")
        self.send(EventKind.WRITE, "new.txt")
        self.send(EventKind.REMOVE, "old.txt")
        self.assertEqual(self.filer.calls, [
            ("copy_content", "~/app/new.txt", b"n"),
            ("copy_content", "~/app/new.txt", b"n"),
            ("delete", "~/app/old.txt"),
        ])
        self.assertIs(self.engine.state.mode, Mode.RENAME_PENDING)
        self.assertEqual(self.engine.state.rename_source, self.source)

    def test_swap_start_drops_pending_source(self):
        self.touch("f.txt")
        self.send(EventKind.CREATE, "f.txt~")
        self.assertIs(self.engine.state.mode, Mode.SWAPPING)
        self.assertIsNone(self.engine.state.rename_source)


class TestSwappingTransitions(EngineTestCase):

    def setUp(self):
        super().setUp()
        self.original = self.touch("f.txt", data=b"saved")
        self.send(EventKind.CREATE, "f.txt~")

    def test_create_write_rename_suppressed(self):
        self.touch("other.txt")
        self.send(EventKind.CREATE, "other.txt")
        self.send(EventKind.WRITE, "f.txt")
        self.send(EventKind.RENAME, "f.txt")
        self.send(EventKind.RENAME, "f.txt~", dest="f.txt")
        self.assertEqual(self.filer.calls, [])
        self.assertIs(self.engine.state.mode, Mode.SWAPPING)

    def test_remove_uploads_swap_target(self):
        self.send(EventKind.REMOVE, "f.txt~")
        self.assertEqual(self.filer.calls, [("copy_content", "~/app/f.txt", b"saved")])
        self.assertIs(self.engine.state.mode, Mode.IDLE)
        self.assertIsNone(self.engine.state.swap_target)


class TestPairedMoves(EngineTestCase):

    def test_paired_move_renames_directly(self):
        self.touch("d.txt")
        self.send(EventKind.RENAME, "a.txt", dest="d.txt")
        self.assertEqual(self.filer.calls, [("rename", "~/app/a.txt", "~/app/d.txt")])
        self.assertIs(self.engine.state.mode, Mode.IDLE)

    def move(self, src, dest, is_directory=False):
        self.engine.handle(FileEvent(self.path(*src.split("/")), EventKind.RENAME,
                                     self.path(*dest.split("/")), is_directory))

    def test_children_of_moved_folder_are_not_renamed_again(self):
        self.move("old", "new", is_directory=True)
        self.move("old/a.txt", "new/a.txt")
        self.move("old/sub", "new/sub", is_directory=True)
        self.move("old/sub/b.txt", "new/sub/b.txt")
        self.assertEqual(self.filer.calls, [("rename", "~/app/old", "~/app/new")])

    def test_moves_outside_moved_folder_are_sent(self):
        self.move("old", "new", is_directory=True)
        self.move("x.txt", "y.txt")
        self.move("old/a.txt", "new/a.txt")
        self.assertEqual(self.filer.calls, [
            ("rename", "~/app/old", "~/app/new"),
            ("rename", "~/app/x.txt", "~/app/y.txt"),
            ("rename", "~/app/old/a.txt", "~/app/new/a.txt"),
        ])

    def test_child_moved_elsewhere_is_sent(self):
        self.move("old", "new", is_directory=True)
        self.move("old/a.txt", "other/a.txt")
        self.assertEqual(len(self.filer.calls), 2)


# ── Tests: error handling ─────────────────────────────────────────────────────

class TestEventErrors(EngineTestCase):

    def test_transfer_error_is_logged_not_raised(self):
        self.filer.fail_with = TransferError("boom")
        self.send(EventKind.REMOVE, "a.txt")
        self.touch("b.txt")
        self.send(EventKind.WRITE, "b.txt")
        self.assertEqual(len(self.filer.calls), 2)

    def test_refused_channel_is_logged_not_raised(self):
        tunnel = mock.Mock()
        tunnel.open_session.side_effect = paramiko.ChannelException(2, "Connect failed")
        engine = SyncEngine(ScpFiler(tunnel), self.session)
        engine.handle(FileEvent(self.path("a.txt"), EventKind.REMOVE))
        engine.handle(FileEvent(self.path("b.txt"), EventKind.RENAME, self.path("c.txt")))
        self.assertEqual(tunnel.open_session.call_count, 2)

    def test_vanished_file_is_logged_not_raised(self):
        # WRITE for a file that no longer exists: stat raises FileNotFoundError
        self.send(EventKind.WRITE, "vanished.txt")
        self.assertEqual(self.filer.calls, [])


# ── Tests: bootstrap ──────────────────────────────────────────────────────────

class TestBootstrap(EngineTestCase):

    def test_empty_root_pulls_remote(self):
        self.engine.sync_folder()
        self.assertEqual(self.filer.calls, [("copy_remote_folder", self.root, "~/app")])

    def test_non_empty_root_skips_pull(self):
        self.touch("keep.txt")
        self.engine.sync_folder()
        self.assertEqual(self.filer.calls, [])

    def test_force_sync_pulls_anyway(self):
        self.touch("keep.txt")
        session = Session(self.root, "~/app", force_sync=True)
        SyncEngine(self.filer, session).sync_folder()
        self.assertEqual(self.filer.calls, [("copy_remote_folder", self.root, "~/app")])


# ── Tests: watch loop ─────────────────────────────────────────────────────────

class TestWatchLoop(EngineTestCase):
    remote_root = "app"

    def _engine(self, initial):
        watchers = []

        def factory(root, events):
            w = FakeWatcher(root, events, initial)
            watchers.append(w)
            return w

        engine = SyncEngine(self.filer, self.session, watcher_factory=factory)
        return engine, watchers

    def test_end_to_end_scenario(self):
        """Pull once, then create, delete and rename each map to one remote call."""
        c = self.path("c.txt")
        a, d = self.path("a.txt"), self.path("d.txt")
        engine, watchers = self._engine([
            FileEvent(c, EventKind.CREATE),
            FileEvent(c, EventKind.REMOVE),
            FileEvent(a, EventKind.RENAME, d),
        ])

        def on_call(call):
            if call[0] == "copy_remote_folder":
                with open(c, "wb") as f:
                    f.write(b"c")
            elif call[0] == "copy_content":
                os.remove(c)
            elif call[0] == "rename":
                engine.stop()

        self.filer.on_call = on_call
        engine.run()

        self.assertEqual(self.filer.calls, [
            ("copy_remote_folder", self.root, "app"),
            ("copy_content", "app/c.txt", b"c"),
            ("delete", "app/c.txt"),
            ("rename", "app/a.txt", "app/d.txt"),
        ])
        self.assertTrue(watchers[0].started)
        self.assertTrue(watchers[0].stopped)

    def test_half_rename_pair_end_to_end(self):
        a = self.touch("a.txt")
        engine, _ = self._engine([
            FileEvent(a, EventKind.RENAME),
            FileEvent(self.path("d.txt"), EventKind.RENAME),
        ])
        self.filer.on_call = lambda call: engine.stop() if call[0] == "rename" else None
        engine.run()
        self.assertEqual(self.filer.calls, [("rename", "app/a.txt", "app/d.txt")])

    def test_stop_with_full_queue_still_ends_loop(self):
        engine = SyncEngine(self.filer, self.session, queue_size=1,
                            watcher_factory=lambda root, events: FakeWatcher(root, events))
        engine.events.put(FileEvent(self.path("x.txt"), EventKind.REMOVE))
        engine.stop()
        self.touch("keep.txt")
        engine.run()
        self.assertEqual(self.filer.calls, [])

    def test_watch_failure_propagates(self):
        class Broken(FakeWatcher):
            def start(self):
                raise WatchError("cannot watch")

        engine = SyncEngine(self.filer, self.session, watcher_factory=Broken)
        self.touch("keep.txt")
        with self.assertRaises(WatchError):
            engine.run()

    def test_queue_is_bounded(self):
        self.assertIsInstance(self.engine.events, queue.Queue)
        self.assertEqual(self.engine.events.maxsize, 50)


# ── Tests: orchestration ──────────────────────────────────────────────────────

class FakePlatform:
    def __init__(self, app):
        self._app = app

    def ssh_info(self):
        return SSHInfo("ssh.example.com:2222", "")

    def app(self, name):
        return self._app

    def ssh_code(self):
        return "code"

    def ssl_disabled(self):
        return True


class TestRunSync(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.source = os.path.join(self.tmpdir.name, "src")
        self.platform = FakePlatform(AppInfo("my-app", "guid", "STARTED", True))

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_build_filer_rejects_unknown_transport(self):
        with self.assertRaises(ValueError):
            build_filer(mock.Mock(), SyncIgnore(), "rsync")

    def test_build_filer_scp_needs_no_sftp_client(self):
        tunnel = mock.Mock()
        filer, sftp = build_filer(tunnel, SyncIgnore(), "scp")
        self.assertIsInstance(filer, ScpFiler)
        self.assertIsNone(sftp)
        tunnel.open_sftp.assert_not_called()

    @mock.patch("appsync.core.sync_engine.SyncEngine.run")
    @mock.patch("appsync.core.sync_engine.SecureTunnel")
    def test_run_sync_wires_tunnel_and_engine(self, tunnel_cls, engine_run):
        tunnel = tunnel_cls.return_value
        run_sync("my-app", source=self.source, target="web",
                 forward_specs=["8080=localhost:8080"], platform=self.platform)

        self.assertTrue(os.path.isdir(self.source))
        args, kwargs = tunnel_cls.call_args
        self.assertEqual(args[1:], ("ssh.example.com:2222", "", "code"))
        self.assertTrue(kwargs["skip_host_validation"])
        tunnel.connect.assert_called_once_with()
        tunnel.start_keepalive.assert_called_once_with()
        tunnel.local_port_forward.assert_called_once_with(
            [ForwardSpec("8080", "localhost:8080")])
        engine_run.assert_called_once_with()
        tunnel.open_sftp.return_value.close.assert_called_once_with()
        tunnel.close.assert_called_once_with()

    @mock.patch("appsync.core.sync_engine.SyncEngine.run", side_effect=KeyboardInterrupt)
    @mock.patch("appsync.core.sync_engine.SecureTunnel")
    def test_interrupt_still_closes_tunnel(self, tunnel_cls, engine_run):
        run_sync("my-app", source=self.source, transport="scp", platform=self.platform)
        tunnel_cls.return_value.open_sftp.assert_not_called()
        tunnel_cls.return_value.close.assert_called_once_with()

    @mock.patch("appsync.core.sync_engine.SecureTunnel")
    def test_bad_forward_spec_fails_before_connecting(self, tunnel_cls):
        with self.assertRaises(ValueError):
            run_sync("my-app", source=self.source, forward_specs=["nope"],
                     platform=self.platform)
        tunnel_cls.assert_not_called()

    def _run_with_ignore_file_in_cwd(self):
        cwd = os.path.join(self.tmpdir.name, "cwd")
        os.makedirs(cwd)
        with open(os.path.join(cwd, ".syncignore"), "w") as f:
            f.write("node_modules/\n")
        self.addCleanup(os.chdir, os.getcwd())
        os.chdir(cwd)

        filer = FakeFiler()
        with mock.patch("appsync.core.sync_engine.SecureTunnel"), \
                mock.patch("appsync.core.sync_engine.build_filer", return_value=(filer, None)), \
                mock.patch.object(SyncEngine, "run", autospec=True,
                                  side_effect=lambda engine: engine.sync_folder()):
            run_sync("my-app", source=self.source, target="web", platform=self.platform)
        return filer

    def test_first_run_pulls_although_ignore_file_was_copied_in(self):
        filer = self._run_with_ignore_file_in_cwd()
        self.assertTrue(os.path.isfile(os.path.join(self.source, ".syncignore")))
        self.assertEqual(filer.calls,
                         [("copy_remote_folder", os.path.abspath(self.source), "~/app/web")])

    def test_populated_root_is_not_pulled(self):
        os.makedirs(self.source)
        with open(os.path.join(self.source, "keep.txt"), "w") as f:
            f.write("keep")
        filer = self._run_with_ignore_file_in_cwd()
        self.assertEqual(filer.calls, [])


if __name__ == "__main__":
    unittest.main()
