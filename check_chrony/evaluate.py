#!/usr/bin/env python3
# Copyright (C) 2024 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.
"""Evaluation of a chrony snapshot

The evaluation never fails: every rule contributes a result, the resulting
state is the worst of them. Sources are counted as good if chronyd currently
synchronizes to them or considers them a candidate for doing so. Only good
sources contribute to the number of sources, the mean reachability and the
last rx levels, but every source is listed in the details.
"""

import dataclasses
from collections.abc import Iterator, Sequence

from . import render
from .config import AgeWeighting, Rules
from .levels import check_levels, ThresholdRule
from .models import SourceRecord, Snapshot, TrackingStatus
from .state import Result, State

__all__ = ["Evaluation", "Metric", "evaluate"]

Metric = tuple[str, float, float | None, float | None]


@dataclasses.dataclass(frozen=True)
class Evaluation:
    state: State
    results: Sequence[Result]
    sources: Sequence[str]
    metrics: Sequence[Metric] = ()

    @property
    def diagnostics(self) -> list[str]:
        return [str(result) for result in self.results] + list(self.sources)


def evaluate(snapshot: Snapshot, rules: Rules) -> Evaluation:
    tracking = snapshot.tracking
    results = [_check_tracking(tracking)]
    metrics: list[Metric] = []

    results.append(
        check_levels(tracking.stratum, rules.stratum, label="Stratum", render_func=_render_int)
    )
    metrics.append(("stratum", tracking.stratum, rules.stratum.warn, rules.stratum.crit))

    good_sources = [source for source in snapshot.sources if source.state.is_good]
    source_lines = tuple(_source_line(source, tracking) for source in snapshot.sources)

    if not good_sources:
        results.append(Result(State.CRIT, "No sources reachable"))
        return Evaluation(_worst(results), tuple(results), source_lines, tuple(metrics))

    results.append(
        check_levels(
            len(good_sources), rules.sources, label="Good sources", render_func=_render_int
        )
    )
    metrics.append(("sources", len(good_sources), rules.sources.warn, rules.sources.crit))

    reachability = sum(source.reachability_percent for source in good_sources) / len(good_sources)
    results.append(
        check_levels(
            reachability, rules.reachability, label="Reachability", render_func=render.percent
        )
    )
    metrics.append(
        ("reachability", reachability, rules.reachability.warn, rules.reachability.crit)
    )

    if rules.last_rx is not None:
        results.extend(
            _check_last_rx(good_sources, tracking, rules.last_rx, rules.last_rx_weighting)
        )

    return Evaluation(_worst(results), tuple(results), source_lines, tuple(metrics))


def _worst(results: Sequence[Result]) -> State:
    return State.worst(*(result.state for result in results))


def _check_tracking(tracking: TrackingStatus) -> Result:
    if not tracking.has_source:
        return Result(State.CRIT, "No tracking source")
    return Result(
        State.OK,
        f"Tracking {tracking.address} (reference ID {tracking.ref_id_name}), "
        f"last offset {render.physical_precision(tracking.last_offset, 3, 's')}",
    )


def _check_last_rx(
    good_sources: Sequence[SourceRecord],
    tracking: TrackingStatus,
    rule: ThresholdRule,
    weighting: AgeWeighting,
) -> Iterator[Result]:
    for source in good_sources:
        state = rule.check(source.since_sample)
        if state is State.OK:
            continue

        is_tracking = _is_tracking(source, tracking)
        if weighting is AgeWeighting.TRACKING_CRITICAL:
            state = State.CRIT if is_tracking else State.WARN

        yield Result(
            state,
            f"{'Tracking source' if is_tracking else 'Source'} {source.address} "
            f"last rx: {render.timespan(source.since_sample)}"
            + rule.levels_text(render.timespan),
        )


def _is_tracking(source: SourceRecord, tracking: TrackingStatus) -> bool:
    return tracking.has_source and source.address == tracking.address


def source_flags(source: SourceRecord, tracking: TrackingStatus) -> str:
    """Flags shown in front of a source

    *: the source chronyd currently synchronizes to
    W: a good source that missed at least one of the last eight polls
    """
    if not source.state.is_good:
        return ""
    flags = "*" if _is_tracking(source, tracking) else ""
    if source.reachability_percent < 100.0:
        flags += "W"
    return flags


def _source_line(source: SourceRecord, tracking: TrackingStatus) -> str:
    return (
        "%-2s %s, stratum %d, %s, last rx %s, reachability %s (0b%s), "
        "last sample %s[%s] +/- %s"
    ) % (
        source_flags(source, tracking),
        source.address,
        source.stratum,
        source.state,
        render.timespan(source.since_sample),
        render.percent(source.reachability_percent),
        format(source.reachability & 0xFF, "08b"),
        render.physical_precision(source.latest_meas, 3, "s"),
        render.physical_precision(source.orig_latest_meas, 3, "s"),
        render.physical_precision(source.latest_meas_err, 3, "s"),
    )


def _render_int(value: float) -> str:
    return "%d" % value
