import argparse
import sys
from pathlib import Path

from distro2gentoo.config import settings
from distro2gentoo.logging import get_logger, setup_logging
from distro2gentoo.pipeline import Migration, MigrationOptions, render_plan
from distro2gentoo.storage.exceptions import (
    BootloaderInstallError,
    IntegrityError,
    MigrationError,
    PreconditionError,
)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_PRECONDITION = 2
EXIT_INTEGRITY = 3
EXIT_BOOTLOADER = 4

log = get_logger(source="cli")


def exit_code_for(error: MigrationError) -> int:
    if isinstance(error, PreconditionError):
        return EXIT_PRECONDITION
    if isinstance(error, IntegrityError):
        return EXIT_INTEGRITY
    if isinstance(error, BootloaderInstallError):
        return EXIT_BOOTLOADER
    return EXIT_FAILURE


def prompt_choice(prompt, choices, default):
    """Numbered menu on the terminal; Enter keeps the default."""
    for index, choice in enumerate(choices):
        marker = "*" if index == default else " "
        print(f"{marker} {index:3d}) {choice}")
    while True:
        answer = input(f"{prompt} [{default}]: ").strip()
        if not answer:
            return default
        if answer.isdigit() and int(answer) < len(choices):
            return int(answer)
        print(f"Enter a number between 0 and {len(choices) - 1}")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="distro2gentoo",
        description="Convert the running Linux installation to Gentoo in place",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Log every external command")
    parser.add_argument("--trace", action="store_true", help="Also log external command output")
    parser.add_argument(
        "-y", "--yes", action="store_true", help="Accept the default mirror and stage3"
    )
    parser.add_argument(
        "-n",
        "--dry-run",
        action="store_true",
        help="Only discover and translate the host configuration",
    )
    parser.add_argument("--mirror", help="Gentoo mirror URL")
    parser.add_argument("--stage3", dest="stage3_flavour", help="Stage3 flavour, e.g. openrc or systemd")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    settings.load_settings()
    settings.override_settings(mirror=args.mirror, stage3_flavour=args.stage3_flavour)

    interactive = not args.yes and sys.stdin.isatty()
    migration = Migration(
        MigrationOptions(
            dry_run=args.dry_run,
            assume_yes=args.yes,
            mirror=args.mirror,
            stage3_flavour=args.stage3_flavour,
        ),
        selector=prompt_choice if interactive else None,
    )
    try:
        summary = migration.run()
    except MigrationError as error:
        log.critical(str(error))
        return exit_code_for(error)
    except KeyboardInterrupt:
        log.error("Interrupted")
        return EXIT_FAILURE

    if summary.dry_run:
        print(render_plan(summary), end="")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
