"""Tests for the fetch-to-store engine."""

import asyncio
import json
import os

import pytest

from common.errors import FetchError
from store.layout import entry_location, integrity_path, package_dir

from conftest import FakeTransport, fetch_options, make_engine


class TestFetchDeduplication:
    """At most one transfer per package identity."""

    def test_concurrent_calls_share_one_transfer(self, store_dir, transport):
        """Two calls before completion get the same futures and one download."""
        async def scenario():
            engine = make_engine(store_dir, transport)
            first = engine.fetch_package(fetch_options("left-pad", "1.3.0"))
            second = engine.fetch_package(fetch_options("left-pad", "1.3.0"))
            assert first.files is second.files
            assert first.finishing is second.finishing
            files = await first.files
            await second.finishing
            return files

        files = asyncio.run(scenario())

        assert len(transport.calls) == 1
        assert files.from_store is False
        assert files.filenames == ["index.js", "lib/util.js", "package.json"]

    def test_location_is_known_before_io(self, store_dir, transport):
        """in_store_location is returned synchronously."""
        async def scenario():
            engine = make_engine(store_dir, transport)
            opts = fetch_options("left-pad", "1.3.0")
            handle = engine.fetch_package(opts)
            location = handle.in_store_location
            await handle.finishing
            return opts, location

        opts, location = asyncio.run(scenario())

        assert location == entry_location(store_dir, opts.package_id)
        assert os.path.isfile(os.path.join(package_dir(location), "index.js"))

    def test_completed_entry_is_a_store_hit(self, store_dir, transport):
        """A fresh engine on the same store reuses the completed entry."""
        async def scenario():
            await make_engine(store_dir, transport).fetch_package(
                fetch_options("left-pad", "1.3.0")
            ).finishing
            handle = make_engine(store_dir, transport).fetch_package(
                fetch_options("left-pad", "1.3.0")
            )
            files = await handle.files
            await handle.finishing
            return files

        files = asyncio.run(scenario())

        assert files.from_store is True
        assert len(transport.calls) == 1

    def test_two_engines_on_one_store_download_once(self, store_dir):
        """The store lock serializes separate engines; the second sees a hit."""
        transport = FakeTransport(delay=0.05)

        async def scenario():
            first = make_engine(store_dir, transport).fetch_package(fetch_options("left-pad", "1.3.0"))
            second = make_engine(store_dir, transport).fetch_package(fetch_options("left-pad", "1.3.0"))
            results = await asyncio.gather(first.files, second.files)
            await asyncio.gather(first.finishing, second.finishing)
            return results

        results = asyncio.run(scenario())

        assert len(transport.calls) == 1
        assert sorted(r.from_store for r in results) == [False, True]

    def test_engine_key_separates_transfers(self, store_dir, transport):
        """Different target engines do not share an in-flight entry."""
        async def scenario():
            engine = make_engine(store_dir, transport)
            a = engine.fetch_package(fetch_options("left-pad", "1.3.0", target_engine="linux-x64"))
            b = engine.fetch_package(fetch_options("left-pad", "1.3.0", target_engine="darwin-arm64"))
            assert a.files is not b.files
            await asyncio.gather(a.finishing, b.finishing)

        asyncio.run(scenario())


class TestFetchSignals:
    """Ordering and independence of the handle's futures."""

    def test_finishing_never_precedes_files(self, store_dir, transport):
        order = []

        async def scenario():
            handle = make_engine(store_dir, transport).fetch_package(fetch_options("left-pad", "1.3.0"))
            handle.files.add_done_callback(lambda _f: order.append("files"))
            handle.finishing.add_done_callback(lambda _f: order.append("finishing"))
            await handle.finishing
            await asyncio.sleep(0)

        asyncio.run(scenario())

        assert order == ["files", "finishing"]

    def test_finishing_means_integrity_recorded(self, store_dir, transport):
        async def scenario():
            handle = make_engine(store_dir, transport).fetch_package(fetch_options("left-pad", "1.3.0"))
            await handle.finishing
            return handle.in_store_location

        location = asyncio.run(scenario())

        with open(integrity_path(location), encoding="utf-8") as fh:
            record = json.load(fh)
        assert record["id"] == "registry.npmjs.org/left-pad/1.3.0"
        assert set(record["files"]) == {"index.js", "lib/util.js", "package.json"}
        assert record["files"]["index.js"]["integrity"].startswith("sha512-")

    def test_raw_manifest_is_delivered(self, store_dir, transport):
        async def scenario():
            handle = make_engine(store_dir, transport).fetch_package(
                fetch_options("left-pad", "1.3.0", fetch_raw_manifest=True)
            )
            manifest = await handle.raw_manifest
            await handle.finishing
            return manifest

        assert asyncio.run(scenario()) == {"name": "left-pad", "version": "1.3.0"}

    def test_raw_manifest_from_store_hit(self, store_dir, transport):
        async def scenario():
            await make_engine(store_dir, transport).fetch_package(
                fetch_options("left-pad", "1.3.0")
            ).finishing
            handle = make_engine(store_dir, transport).fetch_package(
                fetch_options("left-pad", "1.3.0", fetch_raw_manifest=True)
            )
            return await handle.raw_manifest

        assert asyncio.run(scenario())["version"] == "1.3.0"

    def test_raw_manifest_omitted_unless_requested(self, store_dir, transport):
        async def scenario():
            handle = make_engine(store_dir, transport).fetch_package(fetch_options("left-pad", "1.3.0"))
            await handle.finishing
            return handle

        assert asyncio.run(scenario()).raw_manifest is None


class TestFetchForce:
    """Force always starts a new transfer."""

    def test_force_refetches_and_supersedes(self, store_dir, transport):
        async def scenario():
            engine = make_engine(store_dir, transport)
            original = engine.fetch_package(fetch_options("left-pad", "1.3.0"))
            await original.finishing
            forced = engine.fetch_package(fetch_options("left-pad", "1.3.0", force=True))
            later = engine.fetch_package(fetch_options("left-pad", "1.3.0"))
            files = await forced.files
            await forced.finishing
            return original, forced, later, files

        original, forced, later, files = asyncio.run(scenario())

        assert len(transport.calls) == 2
        assert files.from_store is False
        assert forced.files is not original.files
        assert later.files is forced.files


class TestFetchFailures:
    """Failed transfers reject their futures and leave nothing behind."""

    def test_failure_rejects_and_reissue_starts_over(self, store_dir, transport):
        transport.failures = 1

        async def scenario():
            engine = make_engine(store_dir, transport)
            failed = engine.fetch_package(fetch_options("left-pad", "1.3.0"))
            with pytest.raises(FetchError):
                await failed.files
            with pytest.raises(FetchError):
                await failed.finishing
            leftovers = sorted(os.listdir(failed.in_store_location))

            retried = engine.fetch_package(fetch_options("left-pad", "1.3.0"))
            assert retried.files is not failed.files
            files = await retried.files
            await retried.finishing
            return leftovers, files

        leftovers, files = asyncio.run(scenario())

        assert leftovers == []
        assert files.from_store is False
        assert len(transport.calls) == 2

    def test_failure_carries_package_id(self, store_dir, transport):
        transport.failures = 1

        async def scenario():
            handle = make_engine(store_dir, transport).fetch_package(fetch_options("left-pad", "1.3.0"))
            try:
                await handle.files
            except FetchError as exc:
                return exc
            return None

        error = asyncio.run(scenario())

        assert error is not None
        assert error.package_id == "registry.npmjs.org/left-pad/1.3.0"
        assert isinstance(error.__cause__, OSError)


class TestIncompleteEntries:
    """Entries without a valid completion record are refetched."""

    def test_content_without_record_is_absent(self, store_dir, transport):
        """Simulates a crash between files-ready and finishing."""
        opts = fetch_options("left-pad", "1.3.0")
        stale = package_dir(entry_location(store_dir, opts.package_id))
        os.makedirs(stale)
        with open(os.path.join(stale, "stale.js"), "w", encoding="utf-8") as fh:
            fh.write("old")

        async def scenario():
            handle = make_engine(store_dir, transport).fetch_package(opts)
            files = await handle.files
            await handle.finishing
            return files

        files = asyncio.run(scenario())

        assert files.from_store is False
        assert len(transport.calls) == 1
        assert not os.path.exists(os.path.join(stale, "stale.js"))

    def test_modified_file_fails_verification(self, store_dir, transport):
        """A same-size edit is caught by rehashing."""
        async def scenario():
            first = make_engine(store_dir, transport).fetch_package(fetch_options("left-pad", "1.3.0"))
            await first.finishing
            target = os.path.join(package_dir(first.in_store_location), "lib", "util.js")
            with open(target, "r+", encoding="utf-8") as fh:
                content = fh.read()
                fh.seek(0)
                fh.write(content.replace("noop", "nop_"))
            second = make_engine(store_dir, transport).fetch_package(fetch_options("left-pad", "1.3.0"))
            return await second.files

        files = asyncio.run(scenario())

        assert files.from_store is False
        assert len(transport.calls) == 2

    def test_modified_file_trusted_without_verification(self, store_dir, transport):
        async def scenario():
            first = make_engine(store_dir, transport).fetch_package(fetch_options("left-pad", "1.3.0"))
            await first.finishing
            target = os.path.join(package_dir(first.in_store_location), "index.js")
            with open(target, "r+", encoding="utf-8") as fh:
                fh.write("X")
            second = make_engine(store_dir, transport, verify=False).fetch_package(
                fetch_options("left-pad", "1.3.0")
            )
            return await second.files

        assert asyncio.run(scenario()).from_store is True
