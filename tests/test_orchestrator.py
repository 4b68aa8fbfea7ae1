from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from buildbot import config as config_mod
from buildbot import orchestrator as orch_mod
from buildbot.errors import BuildFailed, NotFound, UnsupportedPlatform, VMFailed
from buildbot.orchestrator import HOST, PRODUCER, Orchestrator, detect_mode
from buildbot.projects import Project
from buildbot.toolchain import Toolchain

PROJECTS = [
    Project(name="lua", label="Lua 5.1", role="base", source={"type": "index"}, command="build lua",
            output_prefix="lua-5.1.", copy="src/lua.exe -> lua.exe\nsrc/lua51.lib -> lua51.lib",
            checklist=("lua.exe", "lua51.lib")),
    Project(name="luajit2", label="LuaJIT 2", role="runtime", source={"type": "page"}, command="build luajit",
            output_prefix="luajit-2.", copy="src/luajit.exe -> luajit.exe", work_subdir="src",
            checklist=("luajit.exe",)),
    Project(name="lpeg", label="LPeg", role="extension", source={"type": "homepage"},
            command="link {base}", output_prefix="lpeg-", copy="lpeg.dll", checklist=("lpeg.dll",)),
    Project(name="lfs", label="LuaFileSystem", role="extension", source={"type": "tags"},
            command="link {base}", output_prefix="luafilesystem-", copy="lfs.dll", checklist=("lfs.dll",)),
]

RELEASES = {
    "lua": "https://www.lua.org/ftp/lua-5.1.4.tar.gz",
    "luajit2": "https://luajit.org/download/LuaJIT-2.0.0-beta8.zip",
    "lpeg": "http://www.inf.puc-rio.br/~roberto/lpeg/lpeg-0.10.tar.gz",
    "lfs": "https://github.com/keplerproject/luafilesystem/archive/v1_6_3.zip",
}
FILENAMES = {"lfs": "luafilesystem-1.6.3.zip"}

# files each build leaves in its working directory
OUTPUTS = {
    "lua": ["src/lua.exe", "src/lua51.lib"],
    "luajit2": ["luajit.exe"],
    "lpeg": ["lpeg.dll"],
    "lfs": ["lfs.dll"],
}


class FakeFetchContext:
    def __init__(self, events):
        self.events = events
        self.fetch = MagicMock()

    def materialize(self, ref):
        self.events.append(("fetch", ref.name))
        ref.build_path.mkdir(parents=True)
        (ref.build_path / "src").mkdir()
        return ref.build_path


class FakeLauncher:
    """Popen replacement: the build "runs" when it is waited for."""

    def __init__(self, events, fail=()):
        self.events = events
        self.fail = set(fail)
        self.commands = {}

    def __call__(self, argv, cwd=None, stdout=None, stderr=None):
        label = Path(argv[-1]).stem[len("build-"):]
        self.events.append(("start", label))
        self.commands[label] = Path(argv[-1]).read_text()
        proc = MagicMock()
        proc.poll.return_value = None

        def wait():
            self.events.append(("exit", label))
            if label in self.fail:
                return 2
            for rel in OUTPUTS[label]:
                path = Path(cwd) / rel
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(b"")
            return 0

        proc.wait.side_effect = wait
        return proc


@pytest.fixture
def events():
    return []


def _orchestrator(config, workspace, events):
    locators = {
        name: SimpleNamespace(locate=lambda n=name: workspace.resolve(RELEASES[n], FILENAMES.get(n)))
        for name in RELEASES
    }
    return Orchestrator(config, PROJECTS, workspace=workspace, fetch_context=FakeFetchContext(events),
                        toolchain=Toolchain(None, windows=False), locators=locators)


@pytest.fixture
def orchestrator(config, workspace, events):
    return _orchestrator(config, workspace, events)


def _run(orchestrator, launcher, **kwargs):
    with patch("buildbot.tasks.subprocess.Popen", side_effect=launcher):
        return orchestrator.run_producer(**kwargs)


class TestProducer:

    def test_full_run(self, orchestrator, workspace, events):
        launcher = FakeLauncher(events)
        result = _run(orchestrator, launcher)
        assert result.ok, result.missing
        assert (workspace.binaries / "lua-5.1.4" / "lua.exe").is_file()
        assert (workspace.binaries / "luajit-2.0.0-beta8" / "luajit.exe").is_file()
        assert (workspace.binaries / "lpeg-0.10" / "lpeg.dll").is_file()
        assert (workspace.binaries / "luafilesystem-1.6.3" / "lfs.dll").is_file()
        assert (workspace.binaries / "lpeg-0.10.zip").is_file()
        assert "lua-5.1.4" in launcher.commands["lpeg"]

    def test_build_order(self, orchestrator, events):
        _run(orchestrator, FakeLauncher(events))
        base_exit = events.index(("exit", "lua"))
        assert events[0] == ("fetch", "lua-5.1.4")
        assert events[1] == ("start", "lua")
        # everything else is fetched while the base builds but starts only after it exited
        assert events.index(("fetch", "luajit-2.0.0-beta8")) < base_exit
        assert events.index(("fetch", "lpeg-0.10")) < base_exit
        for label in ("luajit2", "lpeg", "lfs"):
            assert events.index(("start", label)) > base_exit

    def test_runtime_command_has_no_base_reference(self, orchestrator, events):
        launcher = FakeLauncher(events)
        _run(orchestrator, launcher)
        assert "lua-5.1.4" not in launcher.commands["luajit2"]

    def test_runtime_builds_in_work_subdir(self, orchestrator, workspace, events):
        launcher = FakeLauncher(events)
        _run(orchestrator, launcher)
        assert str(workspace.builds / "luajit-2.0.0-beta8" / "src") in launcher.commands["luajit2"]

    def test_build_failure_aborts_before_extensions(self, orchestrator, workspace, events):
        with pytest.raises(BuildFailed):
            _run(orchestrator, FakeLauncher(events, fail={"lua"}))
        assert ("start", "lpeg") not in events
        assert not (workspace.binaries / "lua-5.1.4").exists()

    def test_missing_file_fails_without_packaging(self, orchestrator, workspace, events):
        OUTPUTS["lfs"] = []
        try:
            result = _run(orchestrator, FakeLauncher(events))
        finally:
            OUTPUTS["lfs"] = ["lfs.dll"]
        assert not result.ok
        assert result.missing == [str(workspace.binaries / "luafilesystem-1.6.3" / "lfs.dll")]
        assert not list(workspace.binaries.glob("*.zip"))

    def test_clean_on_start(self, orchestrator, workspace, events):
        stale = workspace.binaries / "lua-5.0.3"
        stale.mkdir()
        _run(orchestrator, FakeLauncher(events))
        assert not stale.exists()

    def test_second_run_without_clean_on_start(self, config, workspace, events):
        config = config_mod.load(overrides={"root": str(workspace.root), "clean_on_start": False})
        orchestrator = _orchestrator(config, workspace, events)
        kept = workspace.binaries / "lua-5.0.3"
        kept.mkdir()
        assert _run(orchestrator, FakeLauncher(events)).ok
        # builds/ from the first run must not survive into the second
        orchestrator = _orchestrator(config, workspace, events)
        assert _run(orchestrator, FakeLauncher(events)).ok
        assert [e for e in events if e == ("fetch", "lua-5.1.4")] == [("fetch", "lua-5.1.4")] * 2
        assert kept.is_dir()

    def test_auto_shuts_down(self, orchestrator, events):
        with patch.object(orch_mod, "run_command", return_value=0) as run_command:
            _run(orchestrator, FakeLauncher(events), auto=True)
        run_command.assert_called_once_with(["shutdown", "-s", "-t", "0"])

    def test_auto_shuts_down_after_failure(self, orchestrator, events):
        with patch.object(orch_mod, "run_command", return_value=0) as run_command:
            with pytest.raises(BuildFailed):
                _run(orchestrator, FakeLauncher(events, fail={"lpeg"}), auto=True)
        run_command.assert_called_once()

    def test_failed_shutdown_keeps_the_build_failure(self, orchestrator, events):
        with patch.object(orch_mod, "run_command", return_value=1) as run_command:
            with pytest.raises(BuildFailed):
                _run(orchestrator, FakeLauncher(events, fail={"lua"}), auto=True)
        run_command.assert_called_once()

    def test_failed_shutdown_after_success_is_reported(self, orchestrator, events):
        with patch.object(orch_mod, "run_command", return_value=1):
            with pytest.raises(VMFailed):
                _run(orchestrator, FakeLauncher(events), auto=True)

    def test_manual_run_does_not_shut_down(self, orchestrator, events):
        with patch.object(orch_mod, "run_command") as run_command:
            _run(orchestrator, FakeLauncher(events))
        run_command.assert_not_called()


def test_locate_all(orchestrator):
    refs = orchestrator.locate_all()
    assert list(refs) == ["lua", "luajit2", "lpeg", "lfs"]
    assert refs["lfs"].name == "luafilesystem-1.6.3"


def test_locate_failure_is_fatal(orchestrator, events):
    orchestrator.locators["lpeg"] = SimpleNamespace(locate=MagicMock(side_effect=NotFound("gone")))
    with pytest.raises(NotFound):
        _run(orchestrator, FakeLauncher(events))


class TestHost:

    def vm(self, workspace, files):
        def run(cmd):
            with open(workspace.log_file, "a") as fh:
                fh.write("building inside the VM\n")
            for rel in files:
                path = workspace.binaries / rel
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(b"")
            return 0
        return run

    def test_verify_and_upload_after_vm(self, orchestrator, workspace):
        workspace.log_file.write_text("previous run\n")
        files = ["lua-5.1.4/lua.exe", "lua-5.1.4/lua51.lib", "luajit-2.0.0-beta8/luajit.exe",
                 "lpeg-0.10/lpeg.dll", "luafilesystem-1.6.3/lfs.dll"]
        orchestrator.config.merged["upload"]["target"] = "host:/srv/lua"
        with patch.object(orch_mod, "LogFollower") as follower, \
                patch.object(orch_mod, "run_command", side_effect=self.vm(workspace, files)) as run_command, \
                patch("buildbot.publish.subprocess.run", return_value=MagicMock(returncode=0)) as scp:
            result = orchestrator.run_host()
        assert result.ok
        run_command.assert_called_once_with(["VBoxHeadless", "-startvm", "Lua build bot"])
        follower.return_value.start.assert_called_once_with()
        follower.return_value.stop.assert_called_once_with()
        assert workspace.log_file.read_text() == "building inside the VM\n"
        assert scp.call_count == 4

    def test_vm_failure(self, orchestrator):
        with patch.object(orch_mod, "LogFollower"), patch.object(orch_mod, "run_command", return_value=1):
            with pytest.raises(VMFailed):
                orchestrator.run_host()

    def test_incomplete_output_is_not_packaged(self, orchestrator, workspace):
        with patch.object(orch_mod, "LogFollower"), \
                patch.object(orch_mod, "run_command", side_effect=self.vm(workspace, ["lua-5.1.4/lua.exe"])):
            result = orchestrator.run_host()
        assert not result.ok
        assert not list(workspace.binaries.glob("*.zip"))


@pytest.mark.parametrize("system,mode", [("Windows", PRODUCER), ("Linux", HOST), ("Darwin", HOST)])
def test_detect_mode(system, mode):
    assert detect_mode(system) == mode


def test_unsupported_platform():
    with pytest.raises(UnsupportedPlatform):
        detect_mode("Java")


def test_run_rejects_unknown_mode(orchestrator):
    with pytest.raises(UnsupportedPlatform):
        orchestrator.run(mode="guest")
