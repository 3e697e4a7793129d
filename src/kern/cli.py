"""Command-line front end for kern."""

import argparse
import json
import logging
import sys
from pathlib import Path

from kern.config import KernConfig
from kern.control import ControlServer, send_command
from kern.daemon import Watchdog
from kern.errors import AllProfilesInvalid, ConfigError, ControlError, KernError, TerminationFailure
from kern.killer import KillLog, OsProcessTable, Terminator, is_critical
from kern.log_config import setup_logging
from kern.monitor import SystemSampler, collect_processes, thermal_zones
from kern.profiles import ProfileStore
from kern.service import GIB, WatchdogService, snapshot_summary

logger = logging.getLogger(__name__)

RULE = "━" * 38


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kern", description="Resource and process watchdog")
    parser.add_argument("--config", type=Path, help="path to kern.yaml")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command")

    status = sub.add_parser("status", help="show system status")
    status.add_argument("--json", action="store_true")

    listing = sub.add_parser("list", help="list processes by memory usage")
    listing.add_argument("--json", action="store_true")
    listing.add_argument("-c", "--count", type=int, default=20)

    kill = sub.add_parser("kill", help="terminate every process with this name")
    kill.add_argument("name")

    mode = sub.add_parser("mode", help="switch the active profile")
    mode.add_argument("profile")

    sub.add_parser("profiles", help="list available profiles")

    log = sub.add_parser("log", help="show recent kills")
    log.add_argument("-n", "--limit", type=int, default=10)

    sub.add_parser("thermal", help="show available temperature sensors")
    sub.add_parser("config", help="show the effective configuration")

    run = sub.add_parser("run", help="run the watchdog")
    run.add_argument("--tui", action="store_true", help="show the live dashboard")
    run.add_argument("--no-control", action="store_true", help="do not open the control socket")
    return parser


def _daemon_running(config: KernConfig) -> bool:
    return config.control_socket.exists()


def cmd_status(config: KernConfig, as_json: bool) -> int:
    if _daemon_running(config):
        try:
            summary = send_command(config.control_socket, "status")
        except ControlError as e:
            logger.debug("Falling back to local sampling: %s", e)
            summary = snapshot_summary(SystemSampler().get_snapshot())
    else:
        summary = snapshot_summary(SystemSampler().get_snapshot())

    if as_json:
        print(json.dumps(summary, indent=2))
        return 0

    print("KERN - System Status")
    print(RULE)
    if "profile" in summary:
        mode = "EMERGENCY" if summary["emergency"] else "normal"
        print(f"Profile: {summary['profile']} ({mode})")
    print(f"CPU: {summary['cpu_usage']:.2f}%")
    print(
        f"RAM: {summary['used_memory_gb']:.2f} GB / {summary['total_memory_gb']:.2f} GB "
        f"({summary['memory_percentage']:.2f}%)"
    )
    print(f"Temp: {summary['temperature']:.2f} °C")
    print()
    print("Top processes by memory:")
    for idx, p in enumerate(summary["top_processes"][:5], start=1):
        print(
            f"  {idx}. {p['name']} (PID: {p['pid']}) - {p['memory_gb']:.2f} GB "
            f"- {p['cpu_percentage']:.2f}% CPU"
        )
    return 0


def cmd_list(as_json: bool, count: int) -> int:
    processes = collect_processes()[:count]
    if as_json:
        rows = [
            {
                "pid": p.pid,
                "name": p.name,
                "memory_gb": p.memory_bytes / GIB,
                "cpu_percentage": p.cpu_percent,
            }
            for p in processes
        ]
        print(json.dumps(rows, indent=2))
        return 0

    print(f"{'PID':<8} {'MEM(GB)':<8} {'CPU%':<8} NAME")
    print(RULE)
    for p in processes:
        print(f"{p.pid:<8} {p.memory_bytes / GIB:<8.2f} {p.cpu_percent:<8.2f} {p.name}")
    return 0


def cmd_kill(config: KernConfig, name: str, terminator: Terminator | None = None) -> int:
    if is_critical(name):
        print(f"Refusing to kill critical process '{name}'")
        return 1

    terminator = terminator or Terminator(OsProcessTable(), kill_log=KillLog(config.kill_log_path))
    pids = terminator.find_by_name(name)
    if not pids:
        print(f"No running process found matching '{name}'")
        return 1

    failures = 0
    for pid in pids:
        try:
            terminator.terminate(pid, name, graceful=True)
            print(f"Terminated {name} (PID {pid})")
        except TerminationFailure as e:
            print(str(e))
            failures += 1
    return 1 if failures else 0


def cmd_mode(config: KernConfig, profile: str) -> int:
    if _daemon_running(config):
        try:
            name = send_command(config.control_socket, "switch_profile", name=profile)
        except ControlError as e:
            print(str(e))
            return 1
        print(f"Switched to profile '{name}'")
        return 0

    # No daemon: apply the switch locally, it persists for the next start
    service = WatchdogService.create(config)
    try:
        service.switch_profile(profile)
    except KernError as e:
        print(str(e))
        return 1
    print(f"Switched to profile '{profile}'")
    return 0


def cmd_profiles(config: KernConfig) -> int:
    store = ProfileStore.load(config.profiles_dir, state_file=config.state_file, default=config.default_profile)
    store.restore_state()
    print("Available Profiles")
    print(RULE)
    for name, profile in store.items():
        current = " (current)" if name == store.current_name else ""
        print(f"{name}{current}")
        print(f"  └─ {profile.description}")
        limits = profile.limits
        print(
            f"     CPU: {limits.max_cpu_percent}%, RAM: {limits.max_ram_percent}%, "
            f"Temp: {limits.max_temp_celsius}°C"
        )
        print(
            f"     Protected: {len(profile.protected)} | "
            f"Kill on activate: {len(profile.kill_on_activate)}"
        )
        print()
    return 0


def cmd_log(config: KernConfig, limit: int) -> int:
    if _daemon_running(config):
        try:
            lines = send_command(config.control_socket, "recent_kills", limit=limit)
        except ControlError as e:
            logger.debug("Reading kill log directly: %s", e)
            lines = KillLog(config.kill_log_path).recent(limit)
    else:
        lines = KillLog(config.kill_log_path).recent(limit)

    if not lines:
        print("No kills recorded")
    for line in lines:
        print(line)
    return 0


def cmd_thermal() -> int:
    zones = thermal_zones()
    if not zones:
        print("No temperature sensors found")
        return 1
    print("Available thermal zones:")
    for source, label, celsius in zones:
        print(f"  {source}: {label} - {celsius:.2f}°C")
    return 0


def cmd_run(config: KernConfig, tui: bool, control: bool) -> int:
    service = WatchdogService.create(config)
    server = ControlServer(config.control_socket, service) if control else None
    if server is not None:
        server.start()

    try:
        if tui:
            from kern.app import KernApp

            KernApp(service).run()
        else:
            Watchdog(service, interval=config.monitor_interval).run_forever()
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        if server is not None:
            server.stop()
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point for the kern command."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        config = KernConfig.load(args.config)
    except ConfigError as e:
        logger.error("%s", e)
        return 2

    try:
        if args.command == "status":
            return cmd_status(config, args.json)
        if args.command == "list":
            return cmd_list(args.json, args.count)
        if args.command == "kill":
            return cmd_kill(config, args.name)
        if args.command == "mode":
            return cmd_mode(config, args.profile)
        if args.command == "profiles":
            return cmd_profiles(config)
        if args.command == "log":
            return cmd_log(config, args.limit)
        if args.command == "thermal":
            return cmd_thermal()
        if args.command == "config":
            print("KERN Configuration Summary")
            print(RULE)
            print("\n".join(config.summary()))
            return 0
        if args.command == "run":
            return cmd_run(config, args.tui, not args.no_control)
    except AllProfilesInvalid as e:
        logger.error("%s", e)
        return 2
    except KernError as e:
        logger.error("%s", e)
        return 1

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
