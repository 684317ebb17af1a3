"""trialstream command line interface."""

from __future__ import annotations

import argparse
import json
import logging
from typing import Any

from .analysis import StatisticsEngine
from .audit import run_audit, validate_randomness
from .config import load_config
from .errors import TrialStreamError
from .runner import ExperimentRunner
from .session import JsonlSessionStore, load_sessions
from .sources import EntropySource, LocalRandomSource, ScriptedSource, read_bits_file

_SUMMARY_FIELDS = (
    "session_id",
    "exit_reason",
    "blocks_recorded",
    "invalidated_attempts",
    "fallback_blocks",
    "total_trials",
    "total_hits",
    "z",
    "p_two_sided",
    "required_hits",
    "significant",
)


def _print_output(payload: dict[str, Any], *, as_json: bool) -> None:
    if as_json:
        print(json.dumps(payload, sort_keys=True, default=str))
        return

    if "ok" in payload:
        print(f"ok: {payload['ok']}")
    summary = payload.get("summary")
    if isinstance(summary, dict):
        for key in _SUMMARY_FIELDS:
            if key in summary:
                print(f"{key}: {summary[key]}")
    audit = payload.get("audit")
    if isinstance(audit, dict):
        print(f"bits: {audit['bit_length']}")
        for name, result in audit["tests"].items():
            print(f"  - {name}: p={result['p_value']} passed={result['passed']}")
    report = payload.get("report")
    if isinstance(report, dict):
        aggregate = report["aggregate"]
        print(f"sessions: {aggregate['sessions']}")
        for channel, stats in aggregate["channels"].items():
            print(f"  - {channel}: {stats['hits']}/{stats['trials']} z={stats['z']:.3f} p={stats['p_two_sided']:.4f}")
        print(f"subject_vs_ghost_z: {aggregate['subject_vs_ghost']['z']:.3f}")

    errors = payload.get("errors")
    if isinstance(errors, list) and errors:
        print("errors:")
        for item in errors:
            print(f"  - {item.get('error_code', '<unknown>')}: {item.get('description', '')}")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="trialstream")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log lifecycle events to stderr")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run one session")
    run_parser.add_argument("--config", help="Optional experiment configuration JSON path")
    run_parser.add_argument("--bits-file", help="Replay bits from a file instead of the local source")
    run_parser.add_argument("--store", help="Directory for JSONL session files")
    run_parser.add_argument("--json", action="store_true", help="Emit JSON output")

    analyze_parser = subparsers.add_parser("analyze", help="Cross-session statistics")
    analyze_parser.add_argument("--sessions", required=True, help="Session file, directory or JSON export")
    analyze_parser.add_argument("--min-blocks", type=int, default=10, help="Minimum blocks for temporal analyses")
    analyze_parser.add_argument("--json", action="store_true", help="Emit JSON output")

    audit_parser = subparsers.add_parser("audit", help="Randomness audit of a bit file")
    audit_parser.add_argument("--bits-file", required=True, help="0/1 text file or raw binary file")
    audit_parser.add_argument("--json", action="store_true", help="Emit JSON output")

    return parser


def _configure_logging(verbose: bool) -> None:
    root = logging.getLogger()
    if verbose and not root.handlers:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _run(args: argparse.Namespace) -> int:
    if args.command == "run":
        config = load_config(args.config)
        source: EntropySource
        if args.bits_file:
            source = ScriptedSource.from_file(args.bits_file, chunk_bits=config.source.chunk_bits)
        else:
            source = LocalRandomSource(chunk_bits=config.source.chunk_bits)
        store = JsonlSessionStore(args.store) if args.store else None
        runner = ExperimentRunner(config, source, store=store)
        session = runner.run()
        summary = session.summary(alpha=config.block_alpha)
        _print_output(
            {"ok": session.exit_reason == "completed", "summary": summary, "pending_writes": runner.recorder.pending},
            as_json=bool(args.json),
        )
        return 0 if session.exit_reason == "completed" else 1

    if args.command == "analyze":
        engine = StatisticsEngine(load_sessions(args.sessions), min_blocks=args.min_blocks)
        _print_output({"ok": True, "report": engine.report()}, as_json=bool(args.json))
        return 0

    if args.command == "audit":
        bits = read_bits_file(args.bits_file)
        audit = run_audit(bits)
        screen = validate_randomness(bits)
        ok = audit["all_pass"] and screen["is_random"]
        _print_output({"ok": ok, "audit": audit, "screen": screen}, as_json=bool(args.json))
        return 0 if ok else 1

    raise ValueError(f"Unsupported command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(bool(args.verbose))
    try:
        return _run(args)
    except TrialStreamError as exc:
        payload = {"ok": False, "errors": [exc.to_dict()]}
        _print_output(payload, as_json=bool(getattr(args, "json", False)))
        return 2
    except OSError as exc:
        payload = {"ok": False, "errors": [{"error_code": "IO", "description": str(exc)}]}
        _print_output(payload, as_json=bool(getattr(args, "json", False)))
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
