#!/usr/bin/env python3
# Copyright (C) 2024 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.
"""check_chrony - Monitor the synchronization state of chronyd"""

# The check talks to chronyd via its command socket, the same way chronyc
# does. Thus it has to run on the monitored host itself, usually as a local
# check or via MRPE, and as a user that is allowed to write next to the
# command socket (root or the chrony user).
#
# Example output:
# OK - Tracking 192.0.2.10 (reference ID C000020A), last offset 12.3 µs, Stratum: 2, \
#   Good sources: 3, Reachability: 100% | stratum=2;10;12 sources=3;2;0 reachability=100;67;34
# *  192.0.2.10, stratum 1, sync, last rx 33 s, reachability 100% (0b11111111), ...
#    192.0.2.11, stratum 2, candidate, last rx 12 s, reachability 100% (0b11111111), ...

from __future__ import annotations

import argparse
import os
import stat
import sys
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, PositiveFloat, ValidationError

from . import log
from .config import AgeWeighting, DEFAULT_SOCKET, Rules
from .evaluate import evaluate, Metric
from .exceptions import ConfigError, MKChronyError
from .levels import Direction, ThresholdRule
from .models import Snapshot
from .snapshot import fetch_snapshot
from .state import State
from .transport import DEFAULT_TIMEOUT


class SnapshotFetcher(Protocol):
    def __call__(self, socket_path: Path, *, timeout: float) -> Snapshot: ...


class Args(BaseModel):
    socket: Path
    timeout: PositiveFloat
    stratum: tuple[float, float]
    reachability: tuple[float, float]
    sources: tuple[float, float]
    last_rx: None | tuple[float, float]
    last_rx_weighting: AgeWeighting
    debug: bool
    verbose: int

    def rules(self) -> Rules:
        try:
            return Rules(
                stratum=_rule("stratum", Direction.UPPER, self.stratum),
                reachability=_rule("reachability", Direction.LOWER, self.reachability),
                sources=_rule("sources", Direction.LOWER, self.sources),
                last_rx=(
                    None
                    if self.last_rx is None
                    else _rule("last_rx", Direction.UPPER, self.last_rx)
                ),
                last_rx_weighting=self.last_rx_weighting,
            )
        except ValidationError as e:
            raise ConfigError(
                "Invalid levels: %s" % "; ".join(str(err["msg"]) for err in e.errors())
            ) from e


def _rule(name: str, direction: Direction, levels: tuple[float, float]) -> ThresholdRule:
    warn, crit = levels
    return ThresholdRule(name=name, direction=direction, warn=warn, crit=crit)


def parse_arguments(argv: Sequence[str]) -> Args:
    defaults = Rules()
    parser = argparse.ArgumentParser(prog="check_chrony", description=__doc__)
    parser.add_argument(
        "-S",
        "--socket",
        type=Path,
        default=DEFAULT_SOCKET,
        help=f"Path to the command socket of chronyd (default: {DEFAULT_SOCKET})",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT,
        help="Seconds to wait for each reply of chronyd (default: %(default)s)",
    )
    parser.add_argument(
        "--stratum",
        type=float,
        nargs=2,
        metavar=("WARN", "CRIT"),
        default=(defaults.stratum.warn, defaults.stratum.crit),
        help="Levels for the stratum of the tracking source (default: %(default)s)",
    )
    parser.add_argument(
        "--reachability",
        type=float,
        nargs=2,
        metavar=("WARN", "CRIT"),
        default=(defaults.reachability.warn, defaults.reachability.crit),
        help="Lower levels for the mean reachability of the good sources in percent "
        "(default: %(default)s)",
    )
    parser.add_argument(
        "--sources",
        type=float,
        nargs=2,
        metavar=("WARN", "CRIT"),
        default=(defaults.sources.warn, defaults.sources.crit),
        help="Lower levels for the number of good sources (default: %(default)s)",
    )
    parser.add_argument(
        "--last-rx",
        type=float,
        nargs=2,
        metavar=("WARN", "CRIT"),
        default=None,
        help="Levels for the seconds since the last sample of a good source. "
        "Not checked by default, 64 128 is a sensible choice.",
    )
    parser.add_argument(
        "--last-rx-weighting",
        type=AgeWeighting,
        choices=AgeWeighting,
        default=AgeWeighting.TRACKING_CRITICAL,
        metavar="WEIGHTING",
        help="How sources exceeding the last rx levels are rated: 'tracking-critical' "
        "(the tracking source is critical, others are warnings) or 'uniform' "
        "(default: %(default)s)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Log to stderr, repeat for more details",
    )
    parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        help="Dump the data of chronyd to stderr and raise unexpected python exceptions.",
    )
    try:
        return Args.model_validate(vars(parser.parse_args(argv)))
    except ValidationError as e:
        parser.error(
            "; ".join(
                "argument --%s: %s" % (".".join(map(str, err["loc"])), err["msg"])
                for err in e.errors()
            )
        )


def check_socket(path: Path) -> Path:
    path = Path(os.path.abspath(path))
    try:
        mode = path.lstat().st_mode
    except OSError as e:
        raise ConfigError(f"Cannot access socket {path}: {e.strerror}") from e
    if not stat.S_ISSOCK(mode):
        raise ConfigError(f"{path} is not a socket")
    return path


def _output_check_result(
    state: State,
    s: str,
    perfdata: Iterable[Metric],
    details: Iterable[str],
) -> None:
    s = f"{state.long_name} - {s}"
    if perfdata_output_entries := [
        "{}={}".format(p[0], ";".join(_render_perf(v) for v in p[1:])) for p in perfdata
    ]:
        s += " | %s" % " ".join(perfdata_output_entries)
    sys.stdout.write("%s\n" % s)
    for line in details:
        sys.stdout.write("%s\n" % line)


def _render_perf(value: float | None) -> str:
    if value is None:
        return ""
    return "%d" % value if float(value).is_integer() else "%.2f" % value


def _check_chrony_main(
    args: Args,
    fetcher: SnapshotFetcher,
) -> tuple[State, str, Sequence[Metric], Sequence[str]]:
    try:
        rules = args.rules()
        snapshot = fetcher(check_socket(args.socket), timeout=args.timeout)

    except MKChronyError as e:
        return State.UNKNOWN, str(e), (), ()

    except Exception as e:
        if args.debug:
            raise
        return State.UNKNOWN, f"Unhandled exception: {e}", (), ()

    if args.debug:
        sys.stderr.write("%s\n" % snapshot.serialize())

    evaluation = evaluate(snapshot, rules)
    log.logger.log(log.VERBOSE, "Evaluated to %s", evaluation.state.long_name)
    return (
        evaluation.state,
        ", ".join(str(result) for result in evaluation.results),
        evaluation.metrics,
        evaluation.sources,
    )


def main(
    argv: Sequence[str] | None = None,
    fetcher: SnapshotFetcher | None = None,
) -> int:
    args = parse_arguments(sys.argv[1:] if argv is None else argv)
    if args.verbose:
        log.setup_console_logging()
        log.logger.setLevel(log.verbosity_to_log_level(args.verbose))

    state, info, perfdata, details = _check_chrony_main(args, fetcher or fetch_snapshot)
    _output_check_result(state, info, perfdata, details)
    return int(state)


if __name__ == "__main__":
    sys.exit(main())
