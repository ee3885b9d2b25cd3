"""Command-line adapter for the partition manager.

Usage:
    mig-partitioner create -g 0 -p 1g.5gb -s 3
    mig-partitioner delete -g 0 --gi 7 --ci 0
    mig-partitioner list
    mig-partitioner free -g 0 -p 2g.10gb
    mig-partitioner serve --port 8080
"""

from __future__ import annotations

import argparse
import sys
from typing import Optional, Sequence

from mig_partitioner.domain.errors import DriverRejectedError, PartitionError
from mig_partitioner.infrastructure.container import Container
from mig_partitioner.infrastructure.logging import get_logger
from mig_partitioner.ports.outbound import DriverError

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mig-partitioner",
        description="Create, delete and inspect GPU slices",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Create a slice (idempotent)")
    create.add_argument("-g", "--gpu", required=True, help="Device index or UUID")
    create.add_argument("-p", "--profile", required=True, help="Profile name, e.g. 1g.5gb")
    create.add_argument("-s", "--start", required=True, type=int, help="First placement slot")

    delete = sub.add_parser("delete", help="Tear a slice down")
    delete.add_argument("-g", "--gpu", required=True, help="Device index or UUID")
    delete.add_argument("--gi", required=True, type=int, help="GPU instance id")
    delete.add_argument("--ci", required=True, type=int, help="Compute instance id")

    sub.add_parser("list", help="Show devices and their live slices")

    free = sub.add_parser("free", help="Show placements where a profile fits now")
    free.add_argument("-g", "--gpu", required=True, help="Device index or UUID")
    free.add_argument("-p", "--profile", required=True, help="Profile name")

    serve = sub.add_parser("serve", help="Run the REST API")
    serve.add_argument("--host", default=None, help="Bind address (default from config)")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default from config)")

    return parser


def _create(container: Container, args: argparse.Namespace) -> None:
    slice_ = container.coordinator.create_slice(args.gpu, args.profile, args.start)
    verb = "Reused" if slice_.reused else "Created"
    print(
        f"{verb} {slice_.profile.name} on {slice_.device} at {slice_.placement}: "
        f"gi={slice_.gi_id} ci={slice_.ci_id}"
    )


def _delete(container: Container, args: argparse.Namespace) -> None:
    container.coordinator.delete_slice(args.gpu, args.gi, args.ci)
    print(f"Deleted gi={args.gi} ci={args.ci} on {args.gpu}")


def _list(container: Container, args: argparse.Namespace) -> None:
    versions = container.coordinator.driver_versions()
    print(f"Driver Version: {versions.driver or 'unknown'}")
    print(f"NVML Version: {versions.library or 'unknown'}")

    slices = container.coordinator.list_slices()
    for device in container.coordinator.list_devices():
        mode = "MIG enabled" if device.mig_enabled else "MIG disabled"
        print(f"GPU {device.index}: {device.name} ({device.identity}) [{mode}]")
        for record in slices:
            if record.device != device.identity:
                continue
            ci = "-" if record.ci_id is None else record.ci_id
            memory = "-" if record.memory_mb is None else f"{record.memory_mb}MB"
            print(
                f"  {record.profile_name:<10} placement={record.placement} "
                f"gi={record.gi_id} ci={ci} {record.state.value} "
                f"memory={memory} in_use={'yes' if record.in_use else 'no'}"
            )

    ready = [r for r in slices if r.ci_id is not None]
    used = sum(1 for r in ready if r.in_use)
    print(f"Found {len(ready)} MIG devices: {used} used, {len(ready) - used} available")


def _free(container: Container, args: argparse.Namespace) -> None:
    placements = container.coordinator.free_placements(args.gpu, args.profile)
    if not placements:
        print(f"No free placement for {args.profile} on {args.gpu}")
        return
    print(" ".join(str(p) for p in placements))


def _serve(container: Container, args: argparse.Namespace) -> None:
    import uvicorn

    from mig_partitioner.adapters.inbound.rest_api import create_app
    from mig_partitioner.infrastructure.metrics import setup_metrics

    server = container.config.server
    setup_metrics(server.metrics_port)
    app = create_app(container.coordinator)
    uvicorn.run(app, host=args.host or server.host, port=args.port or server.port, log_config=None)


COMMANDS = {
    "create": _create,
    "delete": _delete,
    "list": _list,
    "free": _free,
    "serve": _serve,
}


def _fail(command: str, error: PartitionError) -> int:
    logger.error("command_failed", command=command, kind=error.kind.value, **error.context)
    print(f"error: {error}", file=sys.stderr)
    return 1


def _release() -> None:
    try:
        Container.reset()
    except DriverError as e:
        logger.warning("driver_release_failed", driver_code=e.code, error=str(e))


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point. Returns the process exit code.

    A container built here is released on exit, which shuts the driver
    down. A container set up by the caller is left to the caller.
    """
    args = build_parser().parse_args(argv)
    owns_container = not Container.is_initialized()
    try:
        COMMANDS[args.command](Container.get(), args)
    except PartitionError as e:
        return _fail(args.command, e)
    except DriverError as e:
        # Raised while the driver is brought up, before any lifecycle call
        return _fail(args.command, DriverRejectedError(f"Driver unavailable: {e}", driver_code=e.code))
    finally:
        if owns_container:
            _release()
    return 0


if __name__ == "__main__":
    sys.exit(main())
