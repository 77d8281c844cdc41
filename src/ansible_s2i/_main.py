import argparse
import logging
import os
import subprocess
import sys
from pathlib import Path

from ansible_s2i.harness.driver import IntegrationTestDriver
from ansible_s2i.runtime import run_playbook
from ansible_s2i.runtime.assemble import (
    ARTIFACTS_DIR,
    SOURCE_DIR,
    app_home_from_environ,
    assemble,
    save_artifacts,
)
from ansible_s2i.runtime.usage import print_usage

LOG_LEVEL_ENV = "ANSIBLE_S2I_LOG_LEVEL"


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="ansible-s2i", description="Source-to-image builder for Ansible playbooks"
    )
    parser.add_argument(
        "--log-level", default=os.environ.get(LOG_LEVEL_ENV, "INFO"),
        help=f"Logging level (default: ${LOG_LEVEL_ENV} or INFO)"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # S2I scripts, run inside the image
    run_parser = subparsers.add_parser("run", help="Prepare inventory/vault files and exec ansible-playbook")
    run_parser.add_argument("--dry-run", action="store_true", help="Print the command instead of running it")

    assemble_parser = subparsers.add_parser("assemble", help="Install application source and Galaxy requirements")
    assemble_parser.add_argument("--source-dir", default=str(SOURCE_DIR), help="Injected source directory")
    assemble_parser.add_argument("--artifacts-dir", default=str(ARTIFACTS_DIR), help="Artifacts from a previous build")
    assemble_parser.add_argument("--app-home", help="Install location (default: $APP_HOME or cwd)")

    save_parser = subparsers.add_parser("save-artifacts", help="Stream installed roles as a tar archive to stdout")
    save_parser.add_argument("--app-home", help="Install location (default: $APP_HOME or cwd)")

    usage_parser = subparsers.add_parser("usage", help="Print builder image usage")
    usage_parser.add_argument("--image", default=os.environ.get("IMAGE_NAME"), help="Builder image name")

    # Integration test driver, run on the host
    test_parser = subparsers.add_parser("test", help="Build and run the sample application against a builder image")
    test_parser.add_argument(
        "--image", default=os.environ.get("IMAGE_NAME"),
        help="Builder image under test (default: $IMAGE_NAME)"
    )
    test_parser.add_argument("--s2i-args", default=os.environ.get("S2I_ARGS", ""), help="Extra arguments for s2i")
    test_parser.add_argument("--probe-url", help="HTTP endpoint expected to answer 200 once the container runs")
    test_parser.add_argument("--attempts", type=int, default=10, help="Polling attempts (default: 10)")
    test_parser.add_argument("--delay", type=float, default=1.0, help="Seconds between attempts (default: 1)")
    test_parser.add_argument("--keep-image", action="store_true", help="Do not remove the built application image")

    return parser.parse_args(argv)


def main_logic(args):
    if args.command == "run":
        return run_playbook.main(["--dry-run"] if args.dry_run else [])
    elif args.command == "assemble":
        app_home = Path(args.app_home) if args.app_home else app_home_from_environ()
        try:
            assemble(app_home, source_dir=Path(args.source_dir), artifacts_dir=Path(args.artifacts_dir))
        except subprocess.CalledProcessError as e:
            print(f"Failed to install requirements: {e}", file=sys.stderr)
            return e.returncode
        return 0
    elif args.command == "save-artifacts":
        app_home = Path(args.app_home) if args.app_home else app_home_from_environ()
        save_artifacts(app_home)
        return 0
    elif args.command == "usage":
        print_usage(args.image)
        return 0
    elif args.command == "test":
        if not args.image:
            print("No image given. Use --image or set IMAGE_NAME.", file=sys.stderr)
            return 1
        driver = IntegrationTestDriver(
            image_name=args.image,
            s2i_args=args.s2i_args,
            probe_url=args.probe_url,
            attempts=args.attempts,
            delay=args.delay,
            keep_image=args.keep_image,
        )
        return driver.run()
    else:
        print("Unknown command", file=sys.stderr)
        return 1


def main(argv=None):
    args = parse_args(argv)
    # save-artifacts owns stdout, so logs always go to stderr
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    return main_logic(args)


if __name__ == "__main__":
    sys.exit(main())
