import json
import re

import jsonschema

from wsa_sweep import cli
from wsa_sweep.report import report_json_schema
from wsa_sweep.util.exit_codes import ExitCode

PEAK_LINE = re.compile(r"^  (-?\d+\.\d{2}) dBm @ (\d+)$")


def test_parse_args_defaults_and_mode_upper_case() -> None:
    args = cli.parse_args(["--mode", "zif", "--start", "2.4e9", "10.0.0.5"])

    assert args.host == "10.0.0.5"
    assert args.mode == "ZIF"
    assert args.start == 2_400_000_000
    assert args.stop == 3_000_000_000
    assert args.rbw == 100_000
    assert args.peaks == 1

    cfg = cli.build_config(args)
    assert cfg.host == "10.0.0.5"
    assert cfg.fstart_hz == 2_400_000_000
    assert cfg.samples_per_packet == 1024


def test_simulated_run_prints_peaks(capsys) -> None:
    code = cli.main(["--simulate", "--peaks", "2", "--log-level", "WARNING"])

    out = capsys.readouterr().out
    assert code == ExitCode.SUCCESS
    assert "mode: SH" in out
    assert "rbw: 100000" in out
    assert "Peaks found:" in out
    lines = [m for m in (PEAK_LINE.match(line) for line in out.splitlines()) if m]
    assert [int(m.group(2)) for m in lines] == [2_432_100_000, 2_750_000_000]
    assert abs(float(lines[0].group(1)) + 20.0) < 0.5


def test_json_output(capsys) -> None:
    code = cli.main(["--simulate", "--json", "--peaks", "1", "--log-level", "WARNING"])

    frame = json.loads(capsys.readouterr().out)
    assert code == ExitCode.SUCCESS
    jsonschema.validate(frame, report_json_schema())
    assert frame["peaks"][0]["frequency_hz"] == 2_432_100_000


def test_zero_peaks(capsys) -> None:
    code = cli.main(["--simulate", "--peaks", "0", "--log-level", "WARNING"])

    out = capsys.readouterr().out
    assert code == ExitCode.SUCCESS
    assert out.rstrip().endswith("Peaks found:")


def test_invalid_plan_exit_code(capsys) -> None:
    code = cli.main(["--simulate", "--start", "3000000000", "--stop", "2000000000", "--log-level", "WARNING"])

    err = capsys.readouterr().err
    assert code == ExitCode.INVALID_ARGS
    assert "invalid_plan" in err
    assert "fstop_hz=2000000000" in err


def test_bad_arguments_exit_code(capsys) -> None:
    assert cli.main([]) == ExitCode.INVALID_ARGS
    assert cli.main(["--simulate", "--rbw", "abc"]) == ExitCode.INVALID_ARGS
    assert cli.main(["--simulate", "--peaks", "-1"]) == ExitCode.INVALID_ARGS
    assert cli.main(["--simulate", "--spp", "1000", "--log-level", "WARNING"]) == ExitCode.INVALID_ARGS
    capsys.readouterr()


def test_help_exits_cleanly(capsys) -> None:
    assert cli.main(["--help"]) == ExitCode.SUCCESS
    assert "--rbw" in capsys.readouterr().out


def test_unreachable_instrument_maps_to_device_unavailable(capsys) -> None:
    # Nothing listens on the SCPI port locally, so the connect is refused.
    code = cli.main(["127.0.0.1", "--log-level", "CRITICAL", "--peaks", "1"])

    assert code == ExitCode.DEVICE_UNAVAILABLE
    assert "transport_error" in capsys.readouterr().err
