"""Tests for module loading, dependency lookup and the local fallback."""

import json

import pytest

from grabthar.exceptions import ModuleLoadError
from grabthar.fallback import find_local_module, get_fallback
from grabthar.loader import PythonModuleLoader, candidate_dirs, resolve_dependency_dir


def _write_package(directory, name, version, dependencies=None):
    directory.mkdir(parents=True, exist_ok=True)
    manifest = {"name": name, "version": version, "dependencies": dependencies or {}}
    (directory / "package.json").write_text(json.dumps(manifest))
    return directory


class TestCandidateDirs:
    def test_recorded_then_nearest_first(self, tmp_path):
        module = tmp_path / "prefix" / "node_modules" / "pkg"
        recorded = tmp_path / "elsewhere" / "dep"

        candidates = list(candidate_dirs(module, "dep", recorded))

        assert candidates[0] == recorded
        assert candidates[1] == module / "node_modules" / "dep"
        assert candidates[2] == tmp_path / "prefix" / "node_modules" / "dep"

    def test_scoped_dependency(self, tmp_path):
        candidates = list(candidate_dirs(tmp_path / "pkg", "@scope/dep"))
        assert candidates[0] == tmp_path / "pkg" / "node_modules" / "@scope" / "dep"

    def test_duplicates_removed(self, tmp_path):
        module = tmp_path / "node_modules" / "pkg"
        recorded = module / "node_modules" / "dep"
        candidates = list(candidate_dirs(module, "dep", recorded))
        assert candidates.count(recorded) == 1

    def test_resolve_prefers_nested_copy(self, tmp_path):
        module = tmp_path / "node_modules" / "pkg"
        nested = module / "node_modules" / "dep"
        nested.mkdir(parents=True)
        (tmp_path / "node_modules" / "dep").mkdir(parents=True)

        assert resolve_dependency_dir(module, "dep") == nested

    def test_resolve_missing(self, tmp_path):
        with pytest.raises(ModuleLoadError, match="dep-that-does-not-exist"):
            resolve_dependency_dir(tmp_path / "pkg", "dep-that-does-not-exist")


class TestPythonModuleLoader:
    def test_directory_with_init(self, tmp_path):
        package = tmp_path / "pkg"
        package.mkdir()
        (package / "__init__.py").write_text("from .helpers import VALUE\n")
        (package / "helpers.py").write_text("VALUE = 'relative import works'\n")

        module = PythonModuleLoader().load(package)

        assert module.VALUE == "relative import works"

    def test_directory_with_main(self, tmp_path):
        package = tmp_path / "pkg"
        package.mkdir()
        (package / "package.json").write_text(json.dumps({"main": "entry.py"}))
        (package / "entry.py").write_text("NAME = 'entry'\n")

        assert PythonModuleLoader().load(package).NAME == "entry"

    def test_suffix_is_optional(self, tmp_path):
        (tmp_path / "tool.py").write_text("def run():\n    return 'ran'\n")
        assert PythonModuleLoader().load(tmp_path / "tool").run() == "ran"

    def test_json_data(self, tmp_path):
        (tmp_path / "data.json").write_text('{"a": [1, 2]}')
        assert PythonModuleLoader().load(tmp_path / "data.json") == {"a": [1, 2]}

    def test_modules_cached_until_cleared(self, tmp_path):
        source = tmp_path / "counter.py"
        source.write_text("COUNT = 1\n")
        loader = PythonModuleLoader()

        first = loader.load(source)
        source.write_text("COUNT = 22\n")
        assert loader.load(source) is first

        loader.clear()
        assert loader.load(source).COUNT == 22

    def test_missing_path(self, tmp_path):
        with pytest.raises(ModuleLoadError):
            PythonModuleLoader().load(tmp_path / "absent")

    def test_import_error_wrapped(self, tmp_path):
        (tmp_path / "broken.py").write_text("raise RuntimeError('bad module')\n")
        with pytest.raises(ModuleLoadError, match="bad module"):
            PythonModuleLoader().load(tmp_path / "broken.py")

    def test_unknown_file_type(self, tmp_path):
        (tmp_path / "image.png").write_bytes(b"\x89PNG")
        with pytest.raises(ModuleLoadError):
            PythonModuleLoader().load(tmp_path / "image.png")


class TestFallback:
    def test_finds_nearest_installation(self, tmp_path):
        _write_package(tmp_path / "node_modules" / "pkg", "pkg", "1.0.0")
        inner = _write_package(tmp_path / "app" / "node_modules" / "pkg", "pkg", "2.0.0")

        assert find_local_module("pkg", tmp_path / "app") == inner.resolve()

    def test_scoped_module(self, tmp_path):
        _write_package(tmp_path / "node_modules" / "@scope" / "pkg", "@scope/pkg", "1.1.0")

        details = get_fallback("@scope/pkg", tmp_path)

        assert details.version == "1.1.0"
        assert details.node_modules_path == (tmp_path / "node_modules").resolve()

    def test_dependency_versions_from_manifests(self, tmp_path):
        _write_package(tmp_path / "node_modules" / "pkg", "pkg", "1.0.0", {"dep": "^2.0.0", "gone": "1.0.0"})
        _write_package(tmp_path / "node_modules" / "dep", "dep", "2.3.4")

        details = get_fallback("pkg", tmp_path)

        assert details.version == "1.0.0"
        assert details.previous_version == "1.0.0"
        assert details.dependencies["dep"].version == "2.3.4"
        assert "gone" not in details.dependencies

    def test_manifest_without_version(self, tmp_path):
        directory = tmp_path / "node_modules" / "pkg"
        directory.mkdir(parents=True)
        (directory / "package.json").write_text(json.dumps({"name": "pkg"}))

        with pytest.raises(ModuleLoadError, match="no version"):
            get_fallback("pkg", tmp_path)

    def test_nothing_installed(self, tmp_path):
        with pytest.raises(ModuleLoadError):
            find_local_module("definitely-not-installed-pkg", tmp_path)
