"""pkgstore - shared, content-verified package store.

    Returns:
        int: Exit code
"""
import asyncio
import json
import logging
import os
import sys

from constants import ExitCodes
from common.errors import (
    ConfigurationError,
    FetchError,
    PackageImportError,
    ResolutionError,
    StoreError,
)
from common.logging_utils import configure_logging, extra_context, is_debug_enabled
from args import parse_args
from options import extend_install_options, find_rc_file, load_rc_file, pick_registry_for_package
from options.extend import normalize_option_key
from resolving.models import LocalPackage, WantedDependency
from store import (
    FetchPackageToStoreOptions,
    LocalPackageResponse,
    RegistryPackageResponse,
    RequestPackageOptions,
    StoreController,
)
from store.state import split_query

logger = logging.getLogger(__name__)


def parse_wanted(spec):
    """Turn ``name``, ``name@selector`` or ``@scope/name@selector`` into a WantedDependency."""
    name, selector = split_query(spec.strip())
    if not name:
        raise ConfigurationError(f"Invalid package spec: {spec!r}")
    return WantedDependency(alias=name, pref=selector or "")


def build_options(args):
    """Merge the rc file and CLI flags (CLI wins) into StrictInstallOptions."""
    prefix = os.path.abspath(args.PREFIX or os.getcwd())
    rc_path = args.CONFIG or find_rc_file(prefix)
    rc = {}
    if rc_path:
        rc = {normalize_option_key(k): v for k, v in load_rc_file(rc_path).items()}
        logger.debug("Loaded configuration from %s", rc_path)

    cli = {
        "prefix": prefix,
        "store": args.STORE,
    }
    if args.NO_LOCK:
        cli["lock"] = False
    if getattr(args, "REGISTRY", None):
        cli["registries"] = {**dict(rc.get("registries") or {}), "default": args.REGISTRY}
    if getattr(args, "FORCE", False):
        cli["force"] = True
    if getattr(args, "CHILD_CONCURRENCY", None) is not None:
        cli["child_concurrency"] = args.CHILD_CONCURRENCY
    if getattr(args, "SIDE_EFFECTS_CACHE", False):
        cli["side_effects_cache_read"] = True
    if getattr(args, "NO_VERIFY", False):
        cli["verify_store_integrity"] = False
    return extend_install_options({**rc, **cli})


def _local_packages(raw):
    """``{name: {version: directory | {"directory": ...}}}`` from config."""
    result = {}
    for name, versions in (raw or {}).items():
        for version, entry in (versions or {}).items():
            directory = entry.get("directory") if isinstance(entry, dict) else entry
            manifest = entry.get("manifest") if isinstance(entry, dict) else None
            result.setdefault(name, {})[version] = LocalPackage(
                directory=os.path.abspath(directory),
                manifest=manifest or {"name": name, "version": version},
            )
    return result


def _link_directory(source, target):
    if os.path.islink(target) or os.path.isfile(target):
        os.remove(target)
    os.makedirs(os.path.dirname(target), exist_ok=True)
    os.symlink(source, target, target_is_directory=True)


async def _add_one(controller, options, spec, semaphore, local_packages):
    wanted = parse_wanted(spec)
    request_options = RequestPackageOptions(
        prefix=options.prefix,
        lockfile_directory=options.lockfile_directory,
        registry=pick_registry_for_package(options.registries, wanted.alias),
        default_tag=options.tag,
        local_packages=local_packages,
        side_effects_cache=options.side_effects_cache_read,
        update=options.update,
        force=options.force,
        target_engine=options.target_engine,
    )
    target = os.path.join(options.prefix, "node_modules", *wanted.alias.split("/"))
    async with semaphore:
        response = await controller.request_package(wanted, request_options)
        if isinstance(response, LocalPackageResponse):
            await asyncio.to_thread(_link_directory, response.resolution.directory, target)
        elif isinstance(response, RegistryPackageResponse):
            files_future, finishing = response.files, response.finishing
            if files_future is None:
                handle = controller.fetch_package(
                    FetchPackageToStoreOptions(
                        package_id=response.id,
                        resolution=response.resolution,
                        prefix=options.prefix,
                        pkg_name=wanted.alias,
                        target_engine=options.target_engine,
                    )
                )
                files_future, finishing = handle.files, handle.finishing
            files = await files_future
            await controller.import_package(
                response.in_store_location, target, files, force=options.force
            )
            await finishing
        else:
            raise TypeError(f"Unknown package response: {type(response).__name__}")
    print(f"+ {wanted.alias} {response.id}")
    return response.id


async def run_add(controller, options, specs):
    """Request, fetch and import every spec, then record the connections."""
    semaphore = asyncio.Semaphore(options.child_concurrency)
    local_packages = _local_packages(options.local_packages)
    ids = await asyncio.gather(
        *(_add_one(controller, options, spec, semaphore, local_packages) for spec in specs)
    )
    await controller.update_connections(options.prefix, add_dependencies=ids)
    await controller.save_state()
    return ExitCodes.SUCCESS.value


async def _dispatch(args, options):
    controller = StoreController.from_options(options)
    try:
        if args.COMMAND == "add":
            return await run_add(controller, options, args.PACKAGES)
        if args.COMMAND == "prune":
            removed = await controller.prune()
            print(f"Removed {len(removed)} package(s)")
            return ExitCodes.SUCCESS.value
        if args.COMMAND == "usages":
            found = controller.find_package_usages(args.QUERIES)
            print(json.dumps(
                {
                    query: [{"package_id": u.package_id, "usages": u.usages} for u in matches]
                    for query, matches in found.items()
                },
                indent=2,
            ))
            return ExitCodes.SUCCESS.value
        if args.COMMAND == "location":
            location = controller.get_package_location(
                args.PACKAGE_ID, args.NAME, options.lockfile_directory, args.ENGINE
            )
            print(json.dumps({"directory": location.directory, "is_built": location.is_built}, indent=2))
            return ExitCodes.SUCCESS.value
        raise ConfigurationError(f"Unknown command {args.COMMAND!r}")
    finally:
        await controller.close()


def main(argv=None):
    """Main function of the program."""
    args = parse_args(argv)
    configure_logging(args.LOG_LEVEL, args.LOG_FILE)

    if is_debug_enabled(logger):
        logger.debug(
            "CLI start",
            extra=extra_context(event="function_entry", component="cli", action=args.COMMAND),
        )

    try:
        options = build_options(args)
        code = asyncio.run(_dispatch(args, options))
    except ConfigurationError as exc:
        logger.error("%s", exc)
        sys.exit(ExitCodes.CONFIG_ERROR.value)
    except ResolutionError as exc:
        logger.error("%s", exc)
        sys.exit(ExitCodes.RESOLUTION_ERROR.value)
    except FetchError as exc:
        logger.error("%s", exc)
        sys.exit(ExitCodes.CONNECTION_ERROR.value)
    except (PackageImportError, StoreError) as exc:
        logger.error("%s", exc)
        sys.exit(ExitCodes.FILE_ERROR.value)

    if is_debug_enabled(logger):
        logger.debug(
            "CLI finished",
            extra=extra_context(event="function_exit", component="cli", action=args.COMMAND, outcome="success"),
        )
    sys.exit(code)


if __name__ == "__main__":
    main()
