"""CLI entrypoints (rollover activate, rollover service)."""

from __future__ import annotations

import argparse
import sys

from rollover.core.config import Settings
from rollover.utils.logging import setup_logging


def main():
    parser = argparse.ArgumentParser(prog="rollover", description="Dependency-ordered deployment transitions")
    sub = parser.add_subparsers(dest="cmd")

    cmd_activate = sub.add_parser("activate", help="Move the deployment from the old to the new manifest")
    cmd_activate.add_argument("manifest", help="New manifest file")
    cmd_activate.add_argument("-o", "--old-manifest", help="Manifest currently deployed (default: last recorded)")
    cmd_activate.add_argument("-i", "--infrastructure", help="Infrastructure file describing the targets")
    cmd_activate.add_argument("--interface", help="Client interface used to reach targets")
    cmd_activate.add_argument("--target-property", help="Target property holding its address")
    cmd_activate.add_argument("-p", "--profile", default="default", help="Profile name")
    cmd_activate.add_argument(
        "--coordinator-profile-path",
        default="/nix/var/nix/profiles/per-user/rollover",
        help="Directory where the coordinator records deployed manifests",
    )

    cmd_service = sub.add_parser("service", help="Run the target service")
    cmd_service.add_argument("--host", help="Bind host")
    cmd_service.add_argument("--port", type=int, help="Bind port")

    args = parser.parse_args()
    settings = Settings()

    if args.cmd == "activate":
        from rollover.activate.activate import run_activate_system

        setup_logging(settings.log_level, settings.log_format)
        sys.exit(
            run_activate_system(
                args.interface or settings.client_interface,
                args.infrastructure,
                args.manifest,
                args.old_manifest,
                args.coordinator_profile_path,
                args.profile,
                args.target_property,
                settings=settings,
            )
        )

    if args.cmd == "service":
        from rollover.service.app import run

        overrides = {k: v for k, v in (("host", args.host), ("port", args.port)) if v is not None}
        run(settings.model_copy(update=overrides))
        return

    parser.print_help()
    sys.exit(1)


if __name__ == "__main__":
    main()
