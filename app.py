# app.py
import asyncio
import logging
import sys

from config import ViewerConfig
from somnoview.formatting import format_duration, format_event, format_value, severity_band
from somnoview.histogram import DualHistogram
from somnoview.session import Session
from somnoview.view_window import ViewportWindow


def _print_analysis(state, out=sys.stdout):
    summary = state.analysis
    if summary is None:
        return
    print(f"AHI {format_value(summary.ahi_score, 1)} events/h  severity: {summary.severity} "
          f"({severity_band(summary.ahi_score)})", file=out)
    print(f"Events: {len(state.events)}  apnea: {len(state.events.apnea)}  "
          f"hypopnea: {len(state.events.hypopnea)}", file=out)
    stats = state.statistics
    if stats is not None:
        print(
            f"Duration mean {format_duration(stats.mean)}  median {format_duration(stats.median)}  "
            f"range {format_duration(stats.min)}-{format_duration(stats.max)}  "
            f"q1 {format_duration(stats.q1)}  q3 {format_duration(stats.q3)}",
            file=out,
        )
    print(f"Histogram ({state.bin_count} bins, recommended {state.recommended_bins}):", file=out)
    hist = state.histogram
    if isinstance(hist, DualHistogram):
        for idx, label in enumerate(hist.labels):
            print(f"  {label:>12}  apnea {hist.series('apnea')[idx]:>4}  "
                  f"hypopnea {hist.series('hypopnea')[idx]:>4}", file=out)
    else:
        for label, count in zip(hist.labels, hist.frequencies):
            print(f"  {label:>12}  {count:>4}", file=out)
    for idx, event in enumerate(state.events):
        row = format_event(event)
        print(f"  #{idx + 1:<4} {row['type']:<9} {row['time']:<18} {row['duration']:>7}  "
              f"severity {row['severity']}  SpO2 drop {row['spo2_drop']}", file=out)


async def _analyze(session, flow, spo2, *, bins=None, combined=False):
    orch = session.orchestrator
    if combined:
        orch.set_separate_types(False)
    state = await orch.run_analysis(flow, spo2)
    if bins is not None:
        state = orch.set_bin_count(bins)
    return state


async def _window(session, channels, start, end, factor):
    return await session.orchestrator.set_viewport(ViewportWindow(start, end, tuple(channels), factor))


def _window_problem(args, cfg):
    if not args.channels and not cfg.channels:
        return "No channels given and none configured under [ui] channels."
    if args.start < 0:
        return f"--start must not be negative (got {args.start:g})."
    if args.end <= args.start:
        return f"--end ({args.end:g}) must be after --start ({args.start:g})."
    if args.factor < 1:
        return f"--factor must be at least 1 (got {args.factor})."
    return None


def main(argv=None):
    import argparse

    p = argparse.ArgumentParser(description="Sleep apnea event browser")
    p.add_argument("--config")
    p.add_argument("--base-url")
    p.add_argument("--timeout", type=float)
    p.add_argument("-v", "--verbose", action="store_true")
    sub = p.add_subparsers(dest="command", required=True)

    analyze = sub.add_parser("analyze", help="run the AHI analysis and print its events")
    analyze.add_argument("flow_channel")
    analyze.add_argument("spo2_channel")
    analyze.add_argument("--bins", type=int)
    analyze.add_argument("--combined", action="store_true")

    window = sub.add_parser("window", help="fetch a signal window")
    window.add_argument("channels", nargs="*")
    window.add_argument("--start", type=float, required=True)
    window.add_argument("--end", type=float, required=True)
    window.add_argument("--factor", type=int, default=1)

    args = p.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    cfg = ViewerConfig.load(args.config)
    if args.base_url:
        cfg.api_base_url = args.base_url
    if args.timeout is not None and args.timeout > 0:
        cfg.api_timeout_s = args.timeout

    if args.command == "window":
        problem = _window_problem(args, cfg)
        if problem:
            print(problem, file=sys.stderr)
            return 1
        args.channels = args.channels or list(cfg.channels)

    with Session.from_config(cfg) as session:
        if args.command == "analyze":
            state = asyncio.run(
                _analyze(session, args.flow_channel, args.spo2_channel, bins=args.bins, combined=args.combined)
            )
        else:
            state = asyncio.run(_window(session, args.channels, args.start, args.end, args.factor))

    if state.error is not None:
        print(state.error.message, file=sys.stderr)
        logging.getLogger(__name__).debug("%s", state.error.detail)
        return 1
    if args.command == "analyze":
        _print_analysis(state)
    else:
        for name, chunk in state.chunks.items():
            print(f"{name}: {chunk.sample_count} samples {chunk.start:.1f}-{chunk.end:.1f}s")
    if state.notice:
        print(state.notice)
    return 0


if __name__ == "__main__":
    sys.exit(main())
