#!/usr/bin/env python3
"""wsa-peakfind: sweep a span on a WSA and print the strongest peaks."""

from __future__ import annotations

import argparse
import json
import sys
from typing import List, Optional

from wsa_sweep.config import SweepConfig
from wsa_sweep.dsp.processor import SpectrumProcessor
from wsa_sweep.engine import Engine
from wsa_sweep.errors import InvalidPlan, SweepError
from wsa_sweep.report import make_error_report, make_peaks_report
from wsa_sweep.sweep import FrequencyPlan
from wsa_sweep.util.exit_codes import ExitCode
from wsa_sweep.util.logging import configure_logging, get_logger

logger = get_logger(__name__)


def _hz(value: str) -> int:
    """Parse a frequency given as an integer or in exponent form (2.4e9)."""
    try:
        return int(value)
    except ValueError:
        pass
    try:
        parsed = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"could not parse frequency value: {value}") from None
    if not parsed.is_integer():
        raise argparse.ArgumentTypeError(f"frequency must be a whole number of Hz: {value}")
    return int(parsed)


def _count(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"could not parse value: {value}") from None
    if parsed < 0:
        raise argparse.ArgumentTypeError(f"value must not be negative: {value}")
    return parsed


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    if argv is None:
        argv = sys.argv[1:]
    defaults = SweepConfig()

    p = argparse.ArgumentParser(
        prog="wsa-peakfind",
        description="Sweep a frequency span on a WSA and report the strongest peaks",
    )
    p.add_argument("host", nargs="?", metavar="IP", help="Instrument address (optional with --simulate)")
    p.add_argument("--mode", type=str.upper, default=defaults.mode, help=f"RF input mode (default {defaults.mode})")
    p.add_argument("--start", type=_hz, default=defaults.fstart_hz, help=f"Start frequency in Hz (default {defaults.fstart_hz})")
    p.add_argument("--stop", type=_hz, default=defaults.fstop_hz, help=f"Stop frequency in Hz (default {defaults.fstop_hz})")
    p.add_argument("--rbw", type=_hz, default=defaults.rbw_hz, help=f"Resolution bandwidth in Hz (default {defaults.rbw_hz})")
    p.add_argument("--peaks", type=_count, default=defaults.peaks, help=f"Number of peaks to report (default {defaults.peaks})")

    p.add_argument("--spp", type=int, default=defaults.samples_per_packet, help=f"Samples per capture, a power of two (default {defaults.samples_per_packet})")
    p.add_argument("--timeout-ms", dest="timeout_ms", type=_count, default=defaults.read_timeout_ms, help=f"Capture read deadline in ms (default {defaults.read_timeout_ms})")
    p.add_argument("--retries", type=_count, default=defaults.capture_retries, help="Sweep retries after a capture timeout (default 0)")
    p.add_argument("--retry-backoff-ms", dest="retry_backoff_ms", type=_count, default=defaults.retry_backoff_ms, help=f"Delay before a retry in ms (default {defaults.retry_backoff_ms})")
    p.add_argument("--window", choices=SpectrumProcessor.WINDOW_NAMES, default=defaults.window, help=f"FFT window (default {defaults.window})")
    p.add_argument("--reference-level", dest="reference_level", type=float, default=defaults.reference_level_dbm, help="Reference level in dBm when the instrument reports none")
    p.add_argument("--min-separation", dest="min_separation", type=_hz, default=defaults.min_peak_separation_hz, help="Drop peaks closer than this many Hz to a stronger one (default 0, off)")
    p.add_argument("--json", action="store_true", help="Print the report as JSON")
    p.add_argument("--simulate", action="store_true", help="Use the simulated instrument instead of hardware")
    p.add_argument("--log-level", dest="log_level", default=None, help="Log level (default WSA_SWEEP_LOG_LEVEL or INFO)")
    p.add_argument("--log-json", dest="log_json", default="", help="Append JSON log lines to this file")

    args = p.parse_args(argv)
    if not args.simulate and not args.host:
        p.error("<IP> not found")
    return args


def build_config(args: argparse.Namespace) -> SweepConfig:
    cfg = SweepConfig()
    if args.host:
        cfg.host = args.host
    cfg.mode = args.mode
    cfg.fstart_hz = args.start
    cfg.fstop_hz = args.stop
    cfg.rbw_hz = args.rbw
    cfg.peaks = args.peaks
    cfg.min_peak_separation_hz = args.min_separation
    cfg.samples_per_packet = args.spp
    cfg.read_timeout_ms = args.timeout_ms
    cfg.capture_retries = args.retries
    cfg.retry_backoff_ms = args.retry_backoff_ms
    cfg.window = args.window
    cfg.reference_level_dbm = args.reference_level
    cfg.simulate = args.simulate
    cfg.log_level = args.log_level or cfg.log_level
    cfg.log_json_file = args.log_json
    return cfg


def run(args: argparse.Namespace) -> int:
    cfg = build_config(args)
    configure_logging(level=args.log_level, json_file=cfg.log_json_file or None)
    quiet = args.json

    try:
        plan = FrequencyPlan(cfg.fstart_hz, cfg.fstop_hz, cfg.rbw_hz)
        engine = Engine(cfg)
    except (SweepError, ValueError) as exc:
        return _fail(exc, as_json=args.json)

    if not quiet:
        print(f"host: {'simulated' if cfg.simulate else cfg.host}")
        print(f"mode: {cfg.mode}")
        print(f"fstart: {plan.fstart_hz}")
        print(f"fstop: {plan.fstop_hz}")
        print(f"rbw: {plan.rbw_hz}")
        print(f"peaks: {cfg.peaks}")
        print()
        print(f"Connecting to WSA at {'simulator' if cfg.simulate else cfg.host}... ", end="", flush=True)

    try:
        engine.connect()
        if not quiet:
            print("connected.")
        buf, peaks = engine.measure(plan, cfg.peaks, cfg.mode)
    except SweepError as exc:
        if not quiet:
            print("failed.")
        return _fail(exc, as_json=args.json)
    finally:
        engine.disconnect()

    if args.json:
        print(json.dumps(make_peaks_report(buf, peaks, mode=cfg.mode)))
        return ExitCode.SUCCESS

    if buf.dropped_packets:
        print(f"warning: {buf.dropped_packets} packets dropped during the sweep")
    print("\nPeaks found:")
    for peak in peaks:
        print(f"  {peak.amplitude_dbm:0.2f} dBm @ {peak.frequency_hz}")
    return ExitCode.SUCCESS


def _fail(exc: BaseException, *, as_json: bool) -> int:
    if isinstance(exc, InvalidPlan):
        print(f"error: {exc.error_code}: {exc.message} ({exc.parameter}={exc.value})", file=sys.stderr)
        code = ExitCode.INVALID_ARGS
    elif isinstance(exc, SweepError):
        detail = f" {exc.details}" if exc.details else ""
        print(f"error: {exc.error_code}: {exc.message}{detail}", file=sys.stderr)
        code = ExitCode.for_error(exc)
    else:
        print(f"error: {exc}", file=sys.stderr)
        code = ExitCode.INVALID_ARGS
    if as_json:
        print(json.dumps(make_error_report(exc)))
    logger.debug("Exiting with %d (%s)", code, ExitCode.message(code))
    return code


def main(argv: Optional[List[str]] = None) -> int:
    try:
        args = parse_args(argv)
    except SystemExit as exc:
        # argparse exits 2 on bad arguments and 0 for --help.
        return int(exc.code or 0)
    return run(args)


if __name__ == "__main__":
    raise SystemExit(main())
