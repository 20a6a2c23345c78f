"""Command-line interface for environment management.

Creates, lists, validates, updates and removes the catalog environments (or
environments described by YAML spec files) and runs commands inside them.
"""
import argparse
import asyncio
import dataclasses
import json
import os
import signal
import sys
from pathlib import Path
from typing import Any, List, Optional

from enva import __version__
from enva.catalog import CATALOG, CORE, EXTRA, R, SNAKEMAKE, DEFAULT_ENVIRONMENT, ToolRegistry
from enva.config import Settings
from enva.environments.manager import Manager
from enva.errors import (
    EXIT_FAILURE,
    EXIT_INTERRUPTED,
    EXIT_OK,
    EXIT_USAGE,
    ConfigError,
    EnvaError,
    log_error,
)
from enva.execution.runner import CommandRunner
from enva.logging import configure_logging, get_logger, level_for
from enva.specs import find_spec_file, load_spec
from enva.types import CaptureMode, EnvironmentSpec, EnvironmentStatus, ExecutionRequest

logger = get_logger(__name__)

CATALOG_FLAGS = {
    "core": CORE,
    "r": R,
    "snakemake": SNAKEMAKE,
    "extra": EXTRA,
}


def split_packages(values: List[str]) -> List[str]:
    """Accept ``a b``, ``a,b`` and mixtures of both."""
    return [p.strip() for value in values for p in value.split(",") if p.strip()]


def parse_env_overrides(values: Optional[List[str]]) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for value in values or []:
        key, sep, val = value.partition("=")
        if not sep or not key:
            raise ValueError(f"expected KEY=VALUE, got {value!r}")
        overrides[key] = val
    return overrides


class EnvaCLI:
    """Command-line interface for environment management."""

    def __init__(self, manager: Optional[Manager] = None, settings: Optional[Settings] = None):
        self._manager = manager
        self._settings = settings
        self.registry = ToolRegistry()

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = self._manager.settings if self._manager else Settings.from_env()
        return self._settings

    @property
    def manager(self) -> Manager:
        if self._manager is None:
            self._manager = Manager(self.settings)
        return self._manager

    def create_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog="enva",
            description="Manage conda/mamba/micromamba environments for the xdxtools workflows",
        )

        # Global options
        parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
        parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
        parser.add_argument("--quiet", "-q", action="store_true", help="Only log errors")
        parser.add_argument("--log", type=Path, metavar="FILE", help="Also write logs to FILE")
        parser.add_argument(
            "--dry-run", action="store_true", help="Show what would happen without changing anything"
        )
        parser.add_argument("--json", action="store_true", help="Output in JSON format")

        subparsers = parser.add_subparsers(dest="command", help="Available commands")

        # Create environments
        create_parser = subparsers.add_parser("create", help="Create environments")
        which = create_parser.add_mutually_exclusive_group()
        which.add_argument("--all", action="store_true", help="Create every catalog environment")
        for flag, env_name in CATALOG_FLAGS.items():
            which.add_argument(f"--{flag}", action="store_true", help=f"Create {env_name}")
        which.add_argument("--name", help="Environment name (catalog name or spec file name)")
        create_parser.add_argument("--yaml", type=Path, metavar="FILE", help="Environment spec file")
        create_parser.add_argument(
            "--recreate", action="store_true", help="Remove and recreate existing environments"
        )

        # List environments
        subparsers.add_parser("list", help="List environments")

        # Validate environments
        validate_parser = subparsers.add_parser("validate", help="Validate environments")
        target = validate_parser.add_mutually_exclusive_group()
        target.add_argument("--all", action="store_true", help="Validate every created environment")
        target.add_argument("--name", help="Environment name")

        # Install packages
        install_parser = subparsers.add_parser("install", help="Install packages into an environment")
        install_parser.add_argument("packages", nargs="+", help="Packages (space or comma separated)")
        install_parser.add_argument(
            "--name", default=DEFAULT_ENVIRONMENT, help=f"Environment name (default: {DEFAULT_ENVIRONMENT})"
        )

        # Run a command
        run_parser = subparsers.add_parser("run", help="Run a command or script inside an environment")
        run_parser.add_argument("-n", "--name", required=True, help="Environment name")
        run_parser.add_argument("-s", "--script", type=Path, help="Script to run (.R, .py, .sh or executable)")
        run_parser.add_argument("--cwd", type=Path, help="Working directory")
        run_parser.add_argument(
            "-E", "--env", action="append", metavar="KEY=VALUE", help="Set an environment variable"
        )
        run_parser.add_argument(
            "--no-capture", action="store_true", help="Stream output live instead of capturing it"
        )
        run_parser.add_argument("argv", nargs=argparse.REMAINDER, help="Command, or script arguments")

        # Remove an environment
        remove_parser = subparsers.add_parser("remove", help="Remove an environment")
        remove_parser.add_argument("name", help="Environment name")

        # Tool lookup
        which_parser = subparsers.add_parser("which", help="Show the default environment of a tool")
        which_parser.add_argument("tool", help="Tool name")

        return parser

    def check_args(self, parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
        """Reject argument combinations argparse cannot express."""
        if args.command == "create":
            if not (args.all or args.name or args.yaml or any(getattr(args, f) for f in CATALOG_FLAGS)):
                parser.error("create: one of --all, --core, --r, --snakemake, --extra, --name or --yaml is required")
            if args.yaml and (args.all or any(getattr(args, f) for f in CATALOG_FLAGS)):
                parser.error("create: --yaml can only be combined with --name")
        elif args.command == "run":
            if args.argv and args.argv[0] == "--":
                args.argv = args.argv[1:]
            if not args.script and not args.argv:
                parser.error("run: a command or --script is required")
            try:
                args.env = parse_env_overrides(args.env)
            except ValueError as e:
                parser.error(f"run: -E {e}")
        elif args.command == "install":
            args.packages = split_packages(args.packages)
            if not args.packages:
                parser.error("install: no packages given")

    def run(self, argv: Optional[List[str]] = None) -> int:
        """Run the CLI with the given arguments and return the exit code."""
        parser = self.create_parser()
        args = parser.parse_args(argv)

        if not args.command:
            parser.print_help()
            return EXIT_USAGE

        self.check_args(parser, args)

        try:
            configure_logging(
                level=level_for(args.verbose, args.quiet),
                json_output=args.json,
                log_file=args.log,
            )
        except OSError as e:
            print(f"Cannot open log file {args.log}: {e}", file=sys.stderr)
            return EXIT_FAILURE

        try:
            return asyncio.run(self._main(args))
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.warning("interrupted", command=args.command)
            return EXIT_INTERRUPTED

    async def _main(self, args: argparse.Namespace) -> int:
        if os.name != "nt":
            task = asyncio.current_task()
            if task is not None:
                asyncio.get_running_loop().add_signal_handler(signal.SIGTERM, task.cancel)
        return await self.dispatch(args)

    async def dispatch(self, args: argparse.Namespace) -> int:
        handler = getattr(self, f"_handle_{args.command}")
        try:
            return await handler(args)
        except EnvaError as e:
            log_error(e, {"command": args.command})
            self._print_error(args, e)
            return e.exit_code

    def _print_error(self, args: argparse.Namespace, error: EnvaError) -> None:
        if args.json:
            self._emit({"success": False, "error": str(error), "details": error.details})
        else:
            print(f"Error: {error}", file=sys.stderr)

    def _emit(self, data: Any) -> None:
        print(json.dumps(data, indent=2, default=str))

    async def _sync(self, args: argparse.Namespace) -> None:
        """Load the catalog and what the package manager already has."""
        await self.manager.register_catalog()
        await self.manager.discover(install=not args.dry_run)

    def _specs_for(self, args: argparse.Namespace) -> List[EnvironmentSpec]:
        if args.yaml:
            spec = load_spec(args.yaml)
            if args.name and args.name != spec.name:
                spec = dataclasses.replace(spec, name=args.name)
            return [spec]
        if args.all:
            return list(CATALOG.values())
        for flag, env_name in CATALOG_FLAGS.items():
            if getattr(args, flag):
                return [CATALOG[env_name]]

        spec_file = find_spec_file(args.name, self.settings.config_dirs)
        if spec_file is not None:
            return [load_spec(spec_file)]
        if args.name in CATALOG:
            return [CATALOG[args.name]]
        raise ConfigError(
            f"No spec found for {args.name}; pass --yaml or add {args.name}.yaml to a config directory",
            details={"name": args.name, "searched": [str(d) for d in self.settings.config_dirs]},
        )

    async def _handle_create(self, args: argparse.Namespace) -> int:
        specs = self._specs_for(args)
        await self._sync(args)

        exit_code = EXIT_OK
        results = []
        for spec in specs:
            try:
                result = await self.manager.create_environment(
                    spec, recreate=args.recreate, dry_run=args.dry_run
                )
            except EnvaError as e:
                log_error(e, {"command": "create", "name": spec.name})
                self._print_error(args, e)
                exit_code = exit_code or e.exit_code
                continue
            results.append(result)
            if not args.json:
                print(f"{result.name}: {result.outcome.value}")
                if result.dry_run and result.command:
                    print(f"  would run: {' '.join(result.command)}")

        if args.json:
            self._emit({"success": exit_code == EXIT_OK, "data": [r.to_dict() for r in results]})
        return exit_code

    async def _handle_list(self, args: argparse.Namespace) -> int:
        await self._sync(args)
        environments = await self.manager.list_environments()

        if args.json:
            self._emit({"success": True, "data": [env.to_dict() for env in environments]})
            return EXIT_OK

        if not environments:
            print("No environments found")
            return EXIT_OK

        width = max(len(env.name) for env in environments)
        print(f"{'NAME':<{width}}  {'STATUS':<11}  PATH")
        for env in environments:
            path = str(env.installation_path) if env.installation_path else "-"
            print(f"{env.name:<{width}}  {env.status.value:<11}  {path}")
            if env.failure_reason:
                print(f"{'':<{width}}  reason: {env.failure_reason}")
        return EXIT_OK

    async def _handle_validate(self, args: argparse.Namespace) -> int:
        await self._sync(args)

        if args.name:
            names = [args.name]
        else:
            names = [
                env.name
                for env in await self.manager.list_environments()
                if env.status is not EnvironmentStatus.NOT_CREATED
            ]
            if not names:
                print("No environments to validate", file=sys.stderr)

        reports = []
        for name in names:
            report = await self.manager.validate_environment(name, dry_run=args.dry_run)
            reports.append(report)
            if not args.json:
                state = "valid" if report.valid else f"invalid ({report.reason})"
                print(f"{name}: {state}")

        all_valid = all(r.valid for r in reports)
        if args.json:
            self._emit({"success": all_valid, "data": [r.to_dict() for r in reports]})
        return EXIT_OK if all_valid else EXIT_FAILURE

    async def _handle_install(self, args: argparse.Namespace) -> int:
        await self._sync(args)
        result = await self.manager.install_packages(args.name, args.packages, dry_run=args.dry_run)

        if args.json:
            self._emit({"success": True, "data": result.to_dict()})
        elif result.dry_run:
            print(f"Would install {', '.join(result.packages)} into {result.name}")
        else:
            print(f"Installed {', '.join(result.packages)} into {result.name}")
        return EXIT_OK

    async def _handle_run(self, args: argparse.Namespace) -> int:
        if args.script:
            request = ExecutionRequest(
                environment=args.name,
                script=args.script,
                args=tuple(args.argv),
                env_vars=args.env,
                cwd=args.cwd,
                capture=CaptureMode.INHERIT if args.no_capture else CaptureMode.CAPTURE,
            )
        else:
            request = ExecutionRequest(
                environment=args.name,
                command=args.argv[0],
                args=tuple(args.argv[1:]),
                env_vars=args.env,
                cwd=args.cwd,
                capture=CaptureMode.INHERIT if args.no_capture else CaptureMode.CAPTURE,
            )

        await self._sync(args)
        runner = CommandRunner(self.manager)

        if args.dry_run:
            runner.build_argv(request)
            await self.manager.resolve_environment(request.environment)
            print(f"Would run in {request.environment}: {request.command or request.script}")
            return EXIT_OK

        result = await runner.execute(request)

        if args.json:
            self._emit({"success": result.succeeded, "data": result.to_dict()})
        else:
            if result.stdout:
                sys.stdout.write(result.stdout)
                sys.stdout.flush()
            if result.stderr:
                sys.stderr.write(result.stderr)
                sys.stderr.flush()
        return result.exit_code

    async def _handle_remove(self, args: argparse.Namespace) -> int:
        await self._sync(args)
        result = await self.manager.remove_environment(args.name, dry_run=args.dry_run)

        if args.json:
            self._emit({"success": True, "data": result.to_dict()})
        elif result.dry_run:
            print(f"Would remove {result.name}")
        else:
            print(f"Removed {result.name}")
        return EXIT_OK

    async def _handle_which(self, args: argparse.Namespace) -> int:
        environment = self.registry.environment_for(args.tool)
        if environment is None:
            print(f"No default environment for tool {args.tool}", file=sys.stderr)
            return EXIT_FAILURE

        if args.json:
            self._emit({"success": True, "data": {"tool": args.tool, "environment": environment}})
        else:
            print(environment)
        return EXIT_OK


def main() -> None:
    sys.exit(EnvaCLI().run())
