#!/usr/bin/env python3
#
# whisperpair-scan - BLE Fast Pair target discovery and action dispatch
#
# Scans for nearby devices advertising a Fast Pair style pattern, keeps the
# strongest candidates, lets the operator pick one as the target and runs
# the platform's action or playback primitive against it.
#

"""Interactive operator loop for whisperpair-scan."""

import argparse
import asyncio
import csv
import logging
import platform
import signal
import sys
from datetime import datetime
from typing import Callable, List, Optional

from .adapters import BleakAdapter, PlatformAdapter, SimulatedAdapter
from .config import ENV_IRK, Settings, resolve_settings
from .controller import ActionResult, ScanController
from .errors import EmptyRegistry, InvalidInput, ScanError
from .filters import mask_irk
from .registry import Device

LOGGER = logging.getLogger(__name__)

_FIELDNAMES = ["timestamp", "event", "address", "name", "rssi", "seen_count"]

_BANNER = r"""
 __      __ _     _                        ___      _
 \ \    / /| |_  (_) ___ _ __  ___  _ _   | _ \ __ _(_) _ _
  \ \/\/ / | ' \ | |(_-<| '_ \/ -_)| '_|  |  _// _` | || '_|
   \_/\_/  |_||_||_|/__/| .__/\___||_|    |_|  \__,_|_||_|
                        |_|
   BLE target discovery | scan, pick, act
"""

_MENU = [
    ("scan", "Select target (scan)"),
    ("show", "Show matched devices"),
    ("attack", "Trigger action"),
    ("pick", "Pick song (.mp3)"),
    ("play", "Play song on target"),
    ("quit", "Quit"),
]


def _timestamp() -> str:
    """Return an ISO 8601 timestamp with timezone offset."""
    return datetime.now().astimezone().strftime("%Y-%m-%dT%H:%M:%S%z")


def configure_logging(verbose: bool = False, quiet: bool = False):
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    logging.basicConfig(level=level,
                        format="%(asctime)s %(levelname)s: %(message)s")


class LiveLog:
    """Stream accepted observations to a CSV file as they arrive."""

    def __init__(self, path: str):
        self.path = path
        self._fh = open(path, "w", newline="")
        self._writer = csv.DictWriter(self._fh, fieldnames=_FIELDNAMES)
        self._writer.writeheader()
        self._fh.flush()

    def write(self, device: Device):
        self._writer.writerow({
            "timestamp": _timestamp(),
            "event": "new" if device.seen_count == 1 else "seen",
            "address": device.address,
            "name": device.name,
            "rssi": device.rssi,
            "seen_count": device.seen_count,
        })
        self._fh.flush()

    def close(self):
        if not self._fh.closed:
            self._fh.close()


async def scan_and_pick(controller: ScanController) -> Optional[Device]:
    """Start a scan and stop at the first accepted device.

    Ctrl+C while waiting cancels the wait instead of quitting.
    """
    loop = asyncio.get_running_loop()
    handle_sigint = platform.system() != "Windows"
    if handle_sigint:
        loop.add_signal_handler(signal.SIGINT, controller.adapter.request_cancel)
    try:
        await controller.start_scan()
        return await controller.wait_for_first_device()
    finally:
        if handle_sigint:
            loop.remove_signal_handler(signal.SIGINT)


async def _await_action(start: Callable[[], "asyncio.Task[ActionResult]"]) -> ActionResult:
    return await start()


class OperatorMenu:
    """Text menu over a ScanController.  All rendering lives here."""

    def __init__(self, controller: ScanController,
                 input_func: Callable[[str], str] = input):
        self.controller = controller
        self.song_path = ""
        self._input = input_func

    def _prompt(self, text: str) -> str:
        try:
            return self._input(text).strip()
        except EOFError:
            return ""

    def _choose(self) -> str:
        print()
        for i, (_, label) in enumerate(_MENU, 1):
            print(f"  {i}) {label}")
        raw = self._prompt("> ").lower()
        if raw.isdigit() and 1 <= int(raw) <= len(_MENU):
            return _MENU[int(raw) - 1][0]
        if raw in dict(_MENU):
            return raw
        if raw:
            print(f"Unknown choice: {raw}")
            return "?"
        return "quit"

    def run(self):
        while True:
            choice = self._choose()
            if choice == "quit":
                break
            if choice == "?":
                continue
            try:
                getattr(self, f"do_{choice}")()
            except ScanError as e:
                print(f"Error: {e}")

    def run_once(self) -> int:
        target = self.do_scan()
        try:
            self.do_show()
        except EmptyRegistry as e:
            print(f"Error: {e}")
        return 0 if target is not None else 1

    # ------------------------------------------------------------------
    # Menu actions
    # ------------------------------------------------------------------

    def do_scan(self) -> Optional[Device]:
        print("Scanning BLE.. (Ctrl+C to stop)")
        target = asyncio.run(scan_and_pick(self.controller))
        if target is not None:
            print(f"target: {target.address}")
        else:
            print("scan stopped, no device")
        return target

    def do_show(self):
        devices = self.controller.list_devices()
        print(f"=== Matched Devices ({len(devices)}) ===")
        target = self.controller.selected_target
        if target is not None:
            print(f"TARGET: {target.name} [{target.address}], {target.rssi} dBm")
        if not devices:
            raise EmptyRegistry()
        for i, d in enumerate(devices, 1):
            print(f"{i}) {d.name} [{d.address}], {d.rssi} dBm, seen {d.seen_count}x")

    def do_attack(self):
        if self.controller.device_count() == 0:
            raise EmptyRegistry("no devices yet, scan first")
        raw = self._prompt(f"Device # (1-{self.controller.device_count()}): ")
        if not raw:
            return
        try:
            index = int(raw, 10)
        except ValueError:
            raise InvalidInput(f"invalid device index: {raw}")
        result = asyncio.run(_await_action(
            lambda: self.controller.select_and_trigger(index)))
        self._report(result)

    def do_pick(self):
        path = self._prompt("Path to .mp3 file: ")
        if path:
            self.song_path = path
            print(f"song: {path}")

    def do_play(self):
        target = self.controller.selected_target
        if target is not None and self.song_path:
            print(f"Playing on {target.address}")
        result = asyncio.run(_await_action(
            lambda: self.controller.play_on_target(self.song_path)))
        self._report(result)

    def _report(self, result: ActionResult):
        if result.ok:
            print(f"{result.action} OK for {result.address}")
        else:
            print(f"{result.action} FAILED for {result.address}: {result.error}")


def _make_adapter(args: argparse.Namespace, settings: Settings) -> PlatformAdapter:
    if args.simulate:
        return SimulatedAdapter(rate=args.simulate_rate,
                                prefixes=settings.filter.mac_prefixes)
    adapters = None
    if args.adapters:
        adapters = [a.strip() for a in args.adapters.split(",") if a.strip()]
    needs_bdaddr = bool(settings.filter.mac_prefixes or settings.filter.irks)
    return BleakAdapter(active=args.active, adapters=adapters,
                        use_bdaddr=needs_bdaddr)


def _print_header(adapter: PlatformAdapter, settings: Settings,
                  max_devices: int, log_file: Optional[str]):
    """Print the active filter configuration."""
    print(_BANNER)
    f = settings.filter
    print(f"Backend: {adapter.name}")
    print(f"Min RSSI: {f.min_rssi} dBm  |  Max tracked: {max_devices}")
    if f.name_pattern is not None:
        print(f"Name filter: /{f.name_pattern.pattern}/i")
    else:
        print("Name filter: any")
    print(f"MAC prefixes: {', '.join(f.mac_prefixes) or 'any'}")
    if f.irks:
        print(f"IRKs ({settings.irk_source}):")
        for i, irk in enumerate(f.irks, 1):
            print(f"  IRK #{i}: {mask_irk(irk.hex())}")
    if settings.optimistic_actions:
        print("Optimistic actions: ON (missing primitives report success)")
    if log_file:
        print(f"Live log: {log_file}")
    print(f"{'-' * 60}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Find a Fast Pair style BLE target and dispatch actions to it"
    )
    parser.add_argument(
        "--config", type=str, default=None, metavar="FILE",
        help="JSON file with setting overrides (min_rssi, max_devices, "
             "name_pattern, mac_prefixes, irks, optimistic_actions)"
    )

    # Filtering
    parser.add_argument(
        "--min-rssi", type=int, default=None, metavar="DBM",
        help="Ignore advertisements weaker than this (default: -80)"
    )
    name = parser.add_mutually_exclusive_group()
    name.add_argument(
        "--name-filter", type=str, default=None, metavar="REGEX",
        help="Case-insensitive regex the advertised name must match "
             "(default: 'Fast\\s*Pair|Pixel|Galaxy Buds')"
    )
    name.add_argument(
        "--any-name", action="store_true",
        help="Do not filter on name"
    )
    prefix = parser.add_mutually_exclusive_group()
    prefix.add_argument(
        "--prefix", action="append", default=None, metavar="XX:XX:XX",
        help="Allowed address prefix; repeat for several "
             "(default: 3C:5A:B4 and D4:3B:04)"
    )
    prefix.add_argument(
        "--any-prefix", action="store_true",
        help="Do not filter on address prefix"
    )
    irk = parser.add_mutually_exclusive_group()
    irk.add_argument(
        "--irk", type=str, default=None, metavar="HEX",
        help="Only accept RPAs that resolve against this Identity "
             f"Resolving Key (32 hex chars; also read from {ENV_IRK})"
    )
    irk.add_argument(
        "--irk-file", type=str, default=None, metavar="PATH",
        help="Read IRK(s) from a file (one per line, # for comments)"
    )
    parser.add_argument(
        "--max-devices", type=int, default=None, metavar="N",
        help="Maximum tracked devices; the weakest is evicted (default: 10)"
    )

    # Backend
    parser.add_argument(
        "--active", action="store_true",
        help="Active scanning (SCAN_REQ) to get names from scan responses"
    )
    parser.add_argument(
        "--adapters", type=str, default=None, metavar="LIST",
        help="Comma-separated Bluetooth adapters (e.g. hci0,hci1 - Linux only)"
    )
    parser.add_argument(
        "--simulate", action="store_true",
        help="Use synthetic advertisements and simulated primitives"
    )
    parser.add_argument(
        "--simulate-rate", type=float, default=5.0, metavar="N",
        help="Simulated advertisements per second (default: 5)"
    )
    parser.add_argument(
        "--optimistic-actions", action="store_true",
        help="Report success when the platform has no action/playback "
             "primitive (debugging only)"
    )

    # Output
    parser.add_argument(
        "--log", type=str, default=None, metavar="FILE",
        help="Stream accepted observations to a CSV file in real time"
    )
    parser.add_argument(
        "--once", action="store_true",
        help="Scan until the first match, list devices and exit "
             "(exit status 1 if nothing was found)"
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument(
        "-v", "--verbose", action="store_true",
        help="Debug logging, including every rejected advertisement"
    )
    verbosity.add_argument(
        "-q", "--quiet", action="store_true",
        help="Only log warnings and errors"
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.simulate and (args.active or args.adapters):
        parser.error("--active/--adapters have no effect with --simulate")
    if args.simulate_rate <= 0:
        parser.error("--simulate-rate must be positive")
    if args.adapters is not None and not [a for a in args.adapters.split(",") if a.strip()]:
        parser.error("--adapters requires at least one adapter name")

    try:
        settings = resolve_settings(args)
    except (ValueError, OSError) as e:
        parser.error(str(e))

    configure_logging(args.verbose, args.quiet)

    adapter = _make_adapter(args, settings)
    live_log = None
    if args.log:
        try:
            live_log = LiveLog(args.log)
        except OSError as e:
            parser.error(f"Cannot open log file: {e}")

    controller = ScanController(
        adapter, settings.filter,
        max_devices=settings.max_devices,
        optimistic_actions=settings.optimistic_actions,
        on_accept=live_log.write if live_log is not None else None,
    )
    if settings.optimistic_actions:
        LOGGER.warning("Optimistic actions enabled: unavailable primitives "
                       "will be reported as successful")

    _print_header(adapter, settings, settings.max_devices, args.log)
    menu = OperatorMenu(controller)
    try:
        if args.once:
            return menu.run_once()
        menu.run()
    except KeyboardInterrupt:
        print("\nStopping...")
    finally:
        if live_log is not None:
            live_log.close()
            print(f"  Live log written to {live_log.path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
