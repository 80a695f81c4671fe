"""Tests for the watcher facade."""

import asyncio
import json
import os
import time

import pytest

from fake_registry import FakeRegistry, serve
from grabthar.config import WatcherConfig
from grabthar.exceptions import AmbiguousTag, LiveModuleUnavailable, ModuleLoadError, RegistryError
from grabthar.registry.client import RegistryClient
from grabthar.watcher import Watcher, poll


def _scenario_registry():
    return (
        FakeRegistry()
        .publish("pkg", "1.3.52", {"foo": "1.2.2"})
        .publish(
            "pkg",
            "1.3.53",
            {"foo": "1.2.3"},
            files={
                "__init__.py": "VALUE = 53\n",
                "helpers.py": "def answer():\n    return 42\n",
                "settings.json": json.dumps({"mode": "live"}),
                "notes.txt": "hello",
            },
            tag="latest",
        )
        .publish("foo", "1.2.2")
        .publish("foo", "1.2.3", files={"index.py": "NAME = 'foo'\n"}, tag="latest")
    )


def _watcher(base, tmp_path, **kwargs):
    options = {
        "registry": base,
        "live_modules_dir": tmp_path / "live",
        "fallback_root": tmp_path / "app",
        "period": 3600,
        "clean": False,
    }
    options.update(kwargs)
    return Watcher("pkg", **options)


def _install_local_copy(root, version="0.9.0"):
    module = root / "node_modules" / "pkg"
    module.mkdir(parents=True)
    (module / "package.json").write_text(json.dumps({"name": "pkg", "version": version, "dependencies": {"foo": "^1.0.0"}}))
    dependency = root / "node_modules" / "foo"
    dependency.mkdir(parents=True)
    (dependency / "package.json").write_text(json.dumps({"name": "foo", "version": "1.0.4"}))


class TestWatcherGet:
    def test_live_version_with_dependencies(self, tmp_path):
        registry = _scenario_registry()

        async def _run():
            async with serve(registry) as base:
                async with _watcher(base, tmp_path, dependencies=True) as watcher:
                    return await watcher.get("latest")

        details = asyncio.run(_run())

        assert details.version == "1.3.53"
        assert details.previous_version == "1.3.52"
        assert details.dependencies["foo"].version == "1.2.3"
        assert (details.dependencies["foo"].path / "package.json").is_file()
        assert details.module_path == tmp_path / "live" / "pkg_1.3.53" / "node_modules" / "pkg"
        assert details.node_modules_path == details.module_path.parent
        assert details.to_dict()["previousVersion"] == "1.3.52"

    def test_get_without_dependencies(self, tmp_path):
        registry = _scenario_registry()

        async def _run():
            async with serve(registry) as base:
                async with _watcher(base, tmp_path) as watcher:
                    return await watcher.get()

        details = asyncio.run(_run())
        assert details.version == "1.3.53"
        assert details.dependencies["foo"].version == "1.2.3"
        assert not details.dependencies["foo"].path.exists()
        assert registry.hits["tarball"] == 1

    def test_reported_dependencies_follow_child_modules(self, tmp_path):
        registry = _scenario_registry().publish("pkg", "1.3.54", {"foo": "1.2.3", "bar": "2.0.0"}, tag="latest")

        async def _run():
            async with serve(registry) as base:
                async with _watcher(base, tmp_path, child_modules=["bar"]) as watcher:
                    return await watcher.get()

        details = asyncio.run(_run())
        assert details.version == "1.3.54"
        assert {name: dep.version for name, dep in details.dependencies.items()} == {"bar": "2.0.0"}

    def test_repeated_get_uses_current_result(self, tmp_path):
        registry = _scenario_registry()

        async def _run():
            async with serve(registry) as base:
                async with _watcher(base, tmp_path) as watcher:
                    first = await watcher.get()
                    second = await watcher.get()
                    return first, second

        first, second = asyncio.run(_run())
        assert first is second
        assert registry.hits["metadata"] == 1

    def test_poll_starts_immediately(self, tmp_path):
        registry = _scenario_registry()

        async def _run():
            async with serve(registry) as base:
                watcher = poll("pkg", registry=base, live_modules_dir=tmp_path / "live", period=3600, clean=False)
                try:
                    await asyncio.sleep(0.2)
                    assert registry.hits["metadata"] == 1
                    return (await watcher.get()).version
                finally:
                    await watcher.close()

        assert asyncio.run(_run()) == "1.3.53"

    def test_from_config(self, tmp_path):
        registry = _scenario_registry()

        async def _run():
            async with serve(registry) as base:
                config = WatcherConfig(
                    name="pkg",
                    registry=base,
                    live_modules_dir=str(tmp_path / "live"),
                    clean=False,
                    period=3600,
                )
                async with Watcher.from_config(config) as watcher:
                    return await watcher.get()

        assert asyncio.run(_run()).version == "1.3.53"


class TestWatcherTags:
    def _tag(self, tmp_path, tags, tag=None):
        async def _run():
            watcher = Watcher("pkg", tags=tags, live_modules_dir=tmp_path, clean=False)
            try:
                return watcher._effective_tag(tag)
            finally:
                await watcher.close()

        return asyncio.run(_run())

    def test_single_tag_is_default(self, tmp_path):
        assert self._tag(tmp_path, ("beta",)) == "beta"

    def test_latest_preferred_among_many(self, tmp_path):
        assert self._tag(tmp_path, ("beta", "latest")) == "latest"

    def test_ambiguous_without_latest(self, tmp_path):
        with pytest.raises(AmbiguousTag):
            self._tag(tmp_path, ("beta", "next"))

    def test_unknown_explicit_tag(self, tmp_path):
        with pytest.raises(AmbiguousTag):
            self._tag(tmp_path, ("latest",), tag="beta")

    def test_requires_a_tag(self, tmp_path):
        with pytest.raises(ValueError):
            Watcher("pkg", tags=(), live_modules_dir=tmp_path)

    def test_each_tag_resolves_independently(self, tmp_path):
        registry = _scenario_registry().tag("pkg", "release", "1.3.52")

        async def _run():
            async with serve(registry) as base:
                async with _watcher(base, tmp_path, tags=("latest", "release")) as watcher:
                    return (await watcher.get("latest")).version, (await watcher.get("release")).version

        assert asyncio.run(_run()) == ("1.3.53", "1.3.52")


class TestWatcherFallback:
    def test_local_copy_used_when_registry_fails(self, tmp_path, caplog):
        registry = FakeRegistry()
        _install_local_copy(tmp_path / "app")
        errors = []

        async def _run():
            async with serve(registry) as base:
                async with _watcher(base, tmp_path, on_error=errors.append) as watcher:
                    return await watcher.get()

        with caplog.at_level("ERROR"):
            details = asyncio.run(_run())

        assert details.version == "0.9.0"
        assert details.previous_version == "0.9.0"
        assert details.dependencies["foo"].version == "1.0.4"
        assert details.module_path == (tmp_path / "app" / "node_modules" / "pkg").resolve()
        assert "local fallback" in caplog.text
        assert errors and isinstance(errors[0], RegistryError)

    def test_fallback_found_from_nested_directory(self, tmp_path):
        registry = FakeRegistry()
        _install_local_copy(tmp_path / "app")
        nested = tmp_path / "app" / "src" / "service"
        nested.mkdir(parents=True)

        async def _run():
            async with serve(registry) as base:
                async with _watcher(base, tmp_path, fallback_root=nested) as watcher:
                    return await watcher.get()

        assert asyncio.run(_run()).version == "0.9.0"

    def test_both_failures_reported(self, tmp_path):
        registry = FakeRegistry()
        (tmp_path / "app").mkdir()

        async def _run():
            async with serve(registry) as base:
                async with _watcher(base, tmp_path) as watcher:
                    return await watcher.get()

        with pytest.raises(LiveModuleUnavailable) as excinfo:
            asyncio.run(_run())
        assert isinstance(excinfo.value.live_error, RegistryError)
        assert isinstance(excinfo.value.fallback_error, ModuleLoadError)
        assert "Fallback failed:" in str(excinfo.value)

    def test_fallback_disabled(self, tmp_path):
        registry = FakeRegistry()
        _install_local_copy(tmp_path / "app")

        async def _run():
            async with serve(registry) as base:
                async with _watcher(base, tmp_path, fallback=False) as watcher:
                    return await watcher.get()

        with pytest.raises(RegistryError):
            asyncio.run(_run())


class TestWatcherLoading:
    def test_import_module_and_files(self, tmp_path):
        registry = _scenario_registry()

        async def _run():
            async with serve(registry) as base:
                async with _watcher(base, tmp_path) as watcher:
                    package = await watcher.import_module()
                    helpers = await watcher.import_module("helpers")
                    settings = await watcher.import_module("settings.json")
                    return package.VALUE, helpers.answer(), settings

        assert asyncio.run(_run()) == (53, 42, {"mode": "live"})

    def test_import_dependency(self, tmp_path):
        registry = _scenario_registry()

        async def _run():
            async with serve(registry) as base:
                async with _watcher(base, tmp_path, dependencies=True) as watcher:
                    foo = await watcher.import_dependency("foo", "index.py")
                    manifest = await watcher.import_dependency("foo", "package.json")
                    return foo.NAME, manifest["version"]

        assert asyncio.run(_run()) == ("foo", "1.2.3")

    def test_import_missing_dependency(self, tmp_path):
        registry = _scenario_registry()

        async def _run():
            async with serve(registry) as base:
                async with _watcher(base, tmp_path) as watcher:
                    await watcher.import_dependency("not-installed")

        with pytest.raises(ModuleLoadError):
            asyncio.run(_run())

    def test_read_is_cached(self, tmp_path):
        registry = _scenario_registry()

        async def _run():
            async with serve(registry) as base:
                async with _watcher(base, tmp_path) as watcher:
                    first = await watcher.read("notes.txt")
                    details = await watcher.get()
                    (details.module_path / "notes.txt").write_text("changed")
                    second = await watcher.read("notes.txt")
                    return first, second

        assert asyncio.run(_run()) == ("hello", "hello")

    def test_read_requires_path(self, tmp_path):
        async def _run():
            watcher = Watcher("pkg", live_modules_dir=tmp_path, clean=False)
            try:
                with pytest.raises(TypeError):
                    watcher.read()
            finally:
                await watcher.close()

        asyncio.run(_run())

    def test_read_missing_file(self, tmp_path):
        registry = _scenario_registry()

        async def _run():
            async with serve(registry) as base:
                async with _watcher(base, tmp_path) as watcher:
                    await watcher.read("nope.txt")

        with pytest.raises(ModuleLoadError):
            asyncio.run(_run())


class TestWatcherStability:
    def test_mark_unstable_rolls_back_next_cycle(self, tmp_path):
        registry = _scenario_registry()

        async def _run():
            async with serve(registry) as base:
                async with _watcher(base, tmp_path, period=0.05) as watcher:
                    assert (await watcher.get()).version == "1.3.53"
                    watcher.mark_unstable("1.3.53")
                    for _ in range(100):
                        details = await watcher.get()
                        if details.version == "1.3.52":
                            break
                        await asyncio.sleep(0.02)
                    rolled_back = details.version

                    watcher.mark_stable("1.3.53")
                    for _ in range(100):
                        details = await watcher.get()
                        if details.version == "1.3.53":
                            break
                        await asyncio.sleep(0.02)
                    return rolled_back, details.version

        assert asyncio.run(_run()) == ("1.3.52", "1.3.53")
        assert (tmp_path / "live" / "pkg_1.3.52" / "node_modules" / "pkg" / "package.json").is_file()

    def test_cancel_stops_polling(self, tmp_path):
        registry = _scenario_registry()

        async def _run():
            async with serve(registry) as base:
                client = RegistryClient(memo_ttl=0)
                watcher = _watcher(base, tmp_path, period=0.02, clean=True, registry_client=client).start()
                try:
                    await watcher.get()
                    await asyncio.sleep(0.1)
                    polled = registry.hits["metadata"]
                    watcher.cancel()
                    await asyncio.sleep(0.1)
                    stopped_at = registry.hits["metadata"]
                    await asyncio.sleep(0.1)
                    return polled, stopped_at, registry.hits["metadata"]
                finally:
                    await watcher.close()
                    await client.close()

        polled, stopped_at, final = asyncio.run(_run())
        assert polled > 1
        assert stopped_at == final


def _age(path, days):
    stamp = time.time() - days * 24 * 60 * 60
    os.utime(path, (stamp, stamp))


class TestWatcherCleanup:
    def test_sweep_leaves_other_packages_alone(self, tmp_path):
        registry = _scenario_registry().publish("other", "1.0.0", tag="latest")
        live = tmp_path / "live"
        stale_own = live / "pkg_1.3.51"
        stale_own.mkdir(parents=True)
        cdn_label = live / "cdn_example_com"
        cdn_label.mkdir()

        async def _run():
            async with serve(registry) as base:
                other = Watcher("other", registry=base, live_modules_dir=live, period=3600, clean=False)
                async with other, _watcher(base, tmp_path, clean=True) as watcher:
                    other_details = await other.get()
                    own_details = await watcher.get()
                    for path in (other_details.module_path.parent.parent, stale_own, cdn_label):
                        _age(path, 8)
                    removed = await watcher._cleanup.sweep()
                    return other_details, own_details, removed

        other_details, own_details, removed = asyncio.run(_run())

        assert removed == [stale_own]
        assert other_details.module_path.is_dir()
        assert own_details.module_path.is_dir()
        assert cdn_label.is_dir()


class TestWatcherClose:
    def test_close_waits_for_running_cycle(self, tmp_path):
        registry = _scenario_registry()
        registry.delay["metadata"] = 0.2
        errors = []

        async def _run():
            async with serve(registry) as base:
                watcher = _watcher(base, tmp_path, on_error=errors.append).start()
                await asyncio.sleep(0.05)
                await watcher.close()
                return await watcher.get()

        assert asyncio.run(_run()).version == "1.3.53"
        assert errors == []
        assert registry.hits["metadata"] == 1
