"""Tests for store bookkeeping: connections, prune, usages, uploads."""

import asyncio
import json
import os

import pytest

from common.errors import StoreError
from resolving.ids import create_package_id
from store.layout import entry_location, package_dir
from store.state import StoreState, query_matches, split_query

from conftest import REGISTRY, fetch_options, make_controller

LEFT_PAD = create_package_id(REGISTRY, "left-pad", "1.3.0")
IS_ODD = create_package_id(REGISTRY, "is-odd", "3.0.1")


async def _fetch(controller, name, version):
    handle = controller.fetch_package(fetch_options(name, version))
    await handle.finishing
    return handle.in_store_location


class TestConnections:
    """The connection table."""

    def test_add_and_remove(self, store_dir):
        state = StoreState(os.path.join(store_dir, "store.json"))
        state.update_connections("/a", add_dependencies=[LEFT_PAD, IS_ODD])
        state.update_connections("/a", remove_dependencies=[IS_ODD])

        assert state.connections == {"/a": [LEFT_PAD]}

    def test_prune_keeps_only_added(self, store_dir):
        state = StoreState(os.path.join(store_dir, "store.json"))
        state.update_connections("/a", add_dependencies=[LEFT_PAD, IS_ODD])
        state.update_connections("/a", add_dependencies=[IS_ODD], prune=True)

        assert state.connections == {"/a": [IS_ODD]}

    def test_empty_prefix_is_dropped(self, store_dir):
        state = StoreState(os.path.join(store_dir, "store.json"))
        state.update_connections("/a", add_dependencies=[LEFT_PAD])
        state.update_connections("/a", prune=True)

        assert state.connections == {}

    def test_save_and_load(self, store_dir, transport):
        controller = make_controller(store_dir, transport)

        async def scenario():
            await controller.update_connections("/a", add_dependencies=[LEFT_PAD])
            await controller.update_connections("/b", add_dependencies=[LEFT_PAD, IS_ODD])
            await controller.save_state()

        asyncio.run(scenario())
        loaded = StoreState.load(store_dir)

        assert loaded.connections == {"/a": [LEFT_PAD], "/b": sorted([LEFT_PAD, IS_ODD])}
        with open(os.path.join(store_dir, "store.json"), encoding="utf-8") as fh:
            assert json.load(fh)["version"] == 1

    def test_missing_state_is_empty(self, store_dir):
        assert StoreState.load(store_dir).connections == {}

    def test_corrupt_state_raises(self, store_dir):
        with open(os.path.join(store_dir, "store.json"), "w", encoding="utf-8") as fh:
            fh.write("{not json")

        with pytest.raises(StoreError):
            StoreState.load(store_dir)


class TestPrune:
    """Garbage collection never removes what is referenced or in flight."""

    def test_unreferenced_entries_are_removed(self, store_dir, transport):
        controller = make_controller(store_dir, transport)

        async def scenario():
            kept = await _fetch(controller, "left-pad", "1.3.0")
            dropped = await _fetch(controller, "is-odd", "3.0.1")
            await controller.update_connections("/a", add_dependencies=[LEFT_PAD])
            removed = await controller.prune()
            return kept, dropped, removed

        kept, dropped, removed = asyncio.run(scenario())

        assert removed == [dropped]
        assert os.path.isdir(package_dir(kept))
        assert not os.path.exists(dropped)
        assert not os.path.exists(os.path.dirname(dropped))

    def test_refetch_after_prune(self, store_dir, transport):
        controller = make_controller(store_dir, transport)

        async def scenario():
            await _fetch(controller, "is-odd", "3.0.1")
            await controller.prune()
            handle = controller.fetch_package(fetch_options("is-odd", "3.0.1"))
            return await handle.files

        files = asyncio.run(scenario())

        assert files.from_store is False
        assert len(transport.calls) == 2

    def test_in_flight_entry_survives(self, store_dir, transport):
        controller = make_controller(store_dir, transport)

        async def scenario():
            transport.gate = asyncio.Event()
            handle = controller.fetch_package(fetch_options("left-pad", "1.3.0"))
            while not transport.calls:
                await asyncio.sleep(0.01)
            removed = await controller.prune()
            transport.gate.set()
            files = await handle.files
            await handle.finishing
            return removed, files, handle.in_store_location

        removed, files, location = asyncio.run(scenario())

        assert removed == []
        assert files.from_store is False
        assert os.path.isfile(os.path.join(package_dir(location), "index.js"))

    def test_incomplete_entry_is_removed(self, store_dir, transport):
        location = entry_location(store_dir, LEFT_PAD)
        os.makedirs(package_dir(location))
        controller = make_controller(store_dir, transport)

        removed = asyncio.run(controller.prune())

        assert removed == [location]

    def test_referenced_incomplete_entry_is_kept(self, store_dir, transport):
        location = entry_location(store_dir, LEFT_PAD)
        os.makedirs(package_dir(location))
        controller = make_controller(store_dir, transport)

        async def scenario():
            await controller.update_connections("/a", add_dependencies=[LEFT_PAD])
            return await controller.prune()

        assert asyncio.run(scenario()) == []
        assert os.path.isdir(location)


class TestSharedStore:
    """Two runs on one store see each other's persisted connections."""

    def test_saves_from_two_controllers_are_merged(self, store_dir, transport):
        first = make_controller(store_dir, transport)
        second = make_controller(store_dir, transport)

        async def scenario():
            await first.update_connections("/proj-a", add_dependencies=[LEFT_PAD])
            await second.update_connections("/proj-b", add_dependencies=[IS_ODD])
            await first.save_state()
            await second.save_state()

        asyncio.run(scenario())

        assert StoreState.load(store_dir).connections == {
            "/proj-a": [LEFT_PAD],
            "/proj-b": [IS_ODD],
        }

    def test_removed_prefix_stays_removed(self, store_dir, transport):
        StoreState(os.path.join(store_dir, "store.json"), {"/proj-a": [LEFT_PAD], "/proj-b": [IS_ODD]}).save()
        controller = make_controller(store_dir, transport)

        async def scenario():
            await controller.update_connections("/proj-a", prune=True)
            await controller.save_state()

        asyncio.run(scenario())

        assert StoreState.load(store_dir).connections == {"/proj-b": [IS_ODD]}

    def test_prune_respects_connections_saved_by_another_run(self, store_dir, transport):
        stale = make_controller(store_dir, transport)
        other = make_controller(store_dir, transport)

        async def scenario():
            location = await _fetch(other, "left-pad", "1.3.0")
            await other.update_connections("/proj-a", add_dependencies=[LEFT_PAD])
            await other.save_state()
            removed = await stale.prune()
            return location, removed

        location, removed = asyncio.run(scenario())

        assert removed == []
        assert os.path.isdir(package_dir(location))
        assert stale.find_package_usages([LEFT_PAD])[LEFT_PAD][0].usages == ["/proj-a"]

    def test_state_lock_is_released(self, store_dir, transport):
        controller = make_controller(store_dir, transport)

        async def scenario():
            await controller.save_state()
            await controller.prune()

        asyncio.run(scenario())

        assert os.listdir(os.path.join(store_dir, "_locks")) == []


class TestUsages:
    """find_package_usages query forms."""

    @pytest.fixture
    def controller(self, store_dir, transport):
        controller = make_controller(store_dir, transport)

        async def setup():
            await controller.update_connections("/a", add_dependencies=[LEFT_PAD, IS_ODD])
            await controller.update_connections(
                "/b", add_dependencies=[LEFT_PAD, create_package_id(REGISTRY, "left-pad", "2.0.0")]
            )

        asyncio.run(setup())
        return controller

    def test_by_id(self, controller):
        result = controller.find_package_usages([LEFT_PAD])

        assert [(u.package_id, u.usages) for u in result[LEFT_PAD]] == [(LEFT_PAD, ["/a", "/b"])]

    def test_by_name(self, controller):
        result = controller.find_package_usages(["left-pad"])

        assert [u.package_id for u in result["left-pad"]] == [
            LEFT_PAD,
            "registry.npmjs.org/left-pad/2.0.0",
        ]

    def test_by_range(self, controller):
        result = controller.find_package_usages(["left-pad@^2.0.0"])

        assert [(u.package_id, u.usages) for u in result["left-pad@^2.0.0"]] == [
            ("registry.npmjs.org/left-pad/2.0.0", ["/b"])
        ]

    def test_unreferenced_id(self, controller):
        unused = create_package_id(REGISTRY, "unused", "1.0.0")

        result = controller.find_package_usages([unused])

        assert [(u.package_id, u.usages) for u in result[unused]] == [(unused, [])]

    def test_unknown_name(self, controller):
        assert controller.find_package_usages(["nothing"]) == {"nothing": []}


class TestQueryHelpers:
    def test_split_scoped_query(self):
        assert split_query("@scope/pkg@^1.0.0") == ("@scope/pkg", "^1.0.0")
        assert split_query("@scope/pkg") == ("@scope/pkg", None)

    def test_scoped_name_matches(self):
        assert query_matches("@scope/pkg", "registry.npmjs.org/@scope/pkg/1.0.0")

    def test_tag_query_does_not_match(self):
        assert not query_matches("left-pad@latest", LEFT_PAD)


class TestUploadAndLocation:
    """Side-effects cache and package locations."""

    def test_upload_marks_location_built(self, store_dir, transport, tmp_path):
        controller = make_controller(store_dir, transport)
        built = tmp_path / "built"
        built.mkdir()
        (built / "addon.node").write_text("binary", encoding="utf-8")

        async def scenario():
            await _fetch(controller, "left-pad", "1.3.0")
            await controller.upload(str(built), LEFT_PAD, "linux-x64-python3.12")

        asyncio.run(scenario())
        location = controller.get_package_location(LEFT_PAD, "left-pad", "/project", "linux-x64-python3.12")

        assert location.is_built is True
        assert os.path.isfile(os.path.join(location.directory, "addon.node"))

    def test_upload_replaces_previous_build(self, store_dir, transport, tmp_path):
        controller = make_controller(store_dir, transport)
        first = tmp_path / "first"
        first.mkdir()
        (first / "old.node").write_text("1", encoding="utf-8")
        second = tmp_path / "second"
        second.mkdir()
        (second / "new.node").write_text("2", encoding="utf-8")

        async def scenario():
            await _fetch(controller, "left-pad", "1.3.0")
            await controller.upload(str(first), LEFT_PAD, "linux-x64-python3.12")
            await controller.upload(str(second), LEFT_PAD, "linux-x64-python3.12")

        asyncio.run(scenario())
        directory = controller.get_package_location(
            LEFT_PAD, "left-pad", "/project", "linux-x64-python3.12"
        ).directory

        assert sorted(os.listdir(directory)) == ["new.node"]

    def test_upload_requires_entry(self, store_dir, transport, tmp_path):
        controller = make_controller(store_dir, transport)

        with pytest.raises(StoreError):
            asyncio.run(controller.upload(str(tmp_path), LEFT_PAD, "linux-x64-python3.12"))

    def test_upload_rejects_bad_engine(self, store_dir, transport, tmp_path):
        controller = make_controller(store_dir, transport)

        with pytest.raises(StoreError):
            asyncio.run(controller.upload(str(tmp_path), LEFT_PAD, "../escape"))

    def test_pristine_location_without_build(self, store_dir, transport):
        controller = make_controller(store_dir, transport)

        location = controller.get_package_location(LEFT_PAD, "left-pad", "/project", "linux-x64-python3.12")

        assert location.is_built is False
        assert location.directory == package_dir(entry_location(store_dir, LEFT_PAD))

    def test_local_location(self, store_dir, transport, tmp_path):
        controller = make_controller(store_dir, transport)

        location = controller.get_package_location("link:packages/foo", "foo", str(tmp_path))

        assert location.directory == os.path.join(str(tmp_path), "packages", "foo")
        assert location.is_built is False
