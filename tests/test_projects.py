import re
import unittest
from pathlib import Path

import pytest

from buildbot.errors import ConfigError
from buildbot.manifest import parse_rules
from buildbot.projects import BASE, EXTENSION, RUNTIME, base_project, load_projects, parse_projects


class TestBundledTable(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.projects = load_projects()
        cls.by_name = {p.name: p for p in cls.projects}

    def test_tracked_projects(self):
        self.assertEqual(list(self.by_name), ["lua", "luajit1", "luajit2", "lpeg", "luafilesystem"])

    def test_roles(self):
        self.assertEqual(base_project(self.projects).name, "lua")
        self.assertEqual(self.by_name["luajit2"].role, RUNTIME)
        self.assertEqual(self.by_name["lpeg"].role, EXTENSION)
        self.assertTrue(self.by_name["luafilesystem"].requires_base)
        self.assertFalse(self.by_name["luajit1"].requires_base)

    def test_copy_manifests_parse(self):
        for project in self.projects:
            rules = parse_rules(project.copy)
            self.assertTrue(rules, project.name)

    def test_checklist_files_are_copied(self):
        for project in self.projects:
            targets = {r.target for r in parse_rules(project.copy)}
            for rel in project.checklist:
                self.assertIn(rel, targets, (project.name, rel))

    def test_patterns_compile(self):
        for project in self.projects:
            pattern = project.source.get("pattern")
            if pattern:
                re.compile(pattern)

    def test_output_prefixes_match_release_names(self):
        self.assertTrue("lua-5.1.4".startswith(self.by_name["lua"].output_prefix))
        self.assertTrue("luajit-2.0.0-beta8".startswith(self.by_name["luajit2"].output_prefix))
        self.assertFalse("luajit-2.0.0".startswith(self.by_name["lua"].output_prefix))

    def test_luajit2_builds_in_src(self):
        lj2 = self.by_name["luajit2"]
        self.assertEqual(lj2.work_dir(Path("builds/luajit-2.0.0")), Path("builds/luajit-2.0.0/src"))
        self.assertEqual(lj2.render_command(Path("builds/luajit-2.0.0")), "CALL msvcbuild.bat")

    def test_extension_command_links_against_base(self):
        cmd = self.by_name["lpeg"].render_command(Path("b/lpeg-0.10"), Path("C:/bot/builds/lua-5.1.4"))
        self.assertIn("lua-5.1.4", cmd)
        self.assertIn("lua51.lib", cmd)


def _entry(name, role="extension", **extra):
    entry = {"name": name, "role": role, "source": {"type": "index"}, "command": "make",
             "output_prefix": name + "-"}
    entry.update(extra)
    return entry


def test_exactly_one_base_required():
    with pytest.raises(ConfigError):
        parse_projects({"projects": [_entry("a"), _entry("b")]})
    with pytest.raises(ConfigError):
        parse_projects({"projects": [_entry("a", BASE), _entry("b", BASE)]})


def test_duplicate_names():
    with pytest.raises(ConfigError, match="duplicate"):
        parse_projects([_entry("a", BASE), _entry("a")])


def test_unknown_role():
    with pytest.raises(ConfigError, match="role"):
        parse_projects([_entry("a", "plugin")])


def test_missing_fields():
    with pytest.raises(ConfigError, match="command"):
        parse_projects([{"name": "a", "role": BASE, "source": {"type": "index"}, "output_prefix": "a-"}])


def test_malformed_copy_rule_rejected_at_load():
    entry = _entry("a", BASE, copy="src/lua.exe -> lua.exe\nsrc/lua.h ->")
    with pytest.raises(ConfigError, match=r"project a: malformed copy rule"):
        parse_projects([entry])


def test_defaults():
    project = parse_projects([_entry("a", BASE)])[0]
    assert project.label == "a"
    assert project.copy == ""
    assert project.checklist == ()
    assert project.work_subdir is None


def test_load_from_file(tmp_path):
    path = tmp_path / "projects.yaml"
    path.write_text("projects:\n  - name: lua\n    role: base\n    source: {type: index}\n"
                    "    command: make\n    output_prefix: lua-\n    checklist: [lua.exe]\n")
    projects = load_projects(str(path))
    assert projects[0].checklist == ("lua.exe",)


def test_load_missing_file(tmp_path):
    with pytest.raises(ConfigError):
        load_projects(str(tmp_path / "nope.yaml"))
