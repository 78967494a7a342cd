#!/usr/bin/env python3
"""
StarRocks Doctor - multi-expert cluster diagnosis.

Two ways to feed the same analysis code:
- client mode: print a manifest (`--manifest`), execute it elsewhere, analyze with `--results FILE`
- direct mode: `--live` executes the manifest against STARROCKS_DSN / PROMETHEUS_URL
"""

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional

# Configure logging (stderr, so stdout stays machine-readable)
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)

logger = logging.getLogger("doctor.cli")

#
# NOTE: Keep doctor imports lazy (inside functions) so `--help` stays fast and
# optional extras (LLM SDKs, DB drivers) are only imported by modes that need them.
#


def _parse_arg_value(raw: str) -> Any:
    """`--arg days=7` -> 7, `--arg flag=true` -> True, anything non-JSON stays a string."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def parse_kv_pairs(pairs: Optional[List[str]], *, opt: str) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for item in pairs or []:
        key, sep, value = item.partition("=")
        key = key.strip()
        if not sep or not key:
            raise SystemExit(f"{opt} expects key=value, got {item!r}")
        out[key] = _parse_arg_value(value.strip())
    return out


def build_tool_args(ns: argparse.Namespace, default_architecture: Optional[str] = None) -> Dict[str, Any]:
    args = parse_kv_pairs(ns.arg, opt="--arg")
    if ns.scope:
        args["experts"] = [s.strip() for s in ns.scope.split(",") if s.strip()]
    tools = {k: str(v) for k, v in parse_kv_pairs(ns.expert_tool, opt="--expert-tool").items()}
    if tools:
        args["tools"] = tools
    architecture = ns.architecture or default_architecture
    if architecture:
        args["architecture"] = architecture
    return args


def load_results(path: str) -> Dict[str, Any]:
    if path == "-":
        payload = json.load(sys.stdin)
    else:
        with open(path, "r", encoding="utf-8") as f:
            payload = json.load(f)
    if isinstance(payload, dict) and isinstance(payload.get("results"), dict):
        payload = payload["results"]
    if not isinstance(payload, dict):
        raise SystemExit("results file must contain a JSON object keyed by query id")
    return payload


def _live_supplier(cfg):
    from doctor.providers.prom_provider import HttpPromBackend
    from doctor.providers.resultset import LiveResultSupplier
    from doctor.providers.sql_provider import StarRocksSqlBackend

    sql = StarRocksSqlBackend(cfg.starrocks_dsn) if cfg.starrocks_dsn else None
    if sql is None:
        logger.warning("STARROCKS_DSN is not set; SQL queries will be recorded as errors")
    prom = HttpPromBackend(cfg.prometheus_url, timeout=cfg.prometheus_timeout_seconds)
    return LiveResultSupplier(sql=sql, prom=prom)


def run(ns: argparse.Namespace) -> Any:
    """Execute one CLI invocation and return the object to print."""
    import asyncio

    from doctor.core.config import load_config
    from doctor.core.models import CoordinatedReport, ExpertOutcome
    from doctor.diagnostics.coordinator import COORDINATED_TOOL, ExpertCoordinator
    from doctor.llm.failure_classifier import enrich_outcome, enrich_report

    cfg = load_config()
    logging.getLogger().setLevel(getattr(logging, cfg.log_level, logging.INFO))
    coordinator = ExpertCoordinator(
        cross_module=cfg.cross_module and not ns.no_cross_module,
        default_scope=cfg.default_scope,
    )

    if ns.list_experts:
        return coordinator.registry.describe()

    tool = ns.tool or COORDINATED_TOOL
    args = build_tool_args(ns, cfg.architecture)

    if ns.manifest:
        return coordinator.manifest_for_tool(tool, args)

    if ns.results:
        result = coordinator.analyze_tool(tool, load_results(ns.results), args)
    elif ns.live:
        supplier = _live_supplier(cfg)
        if tool == COORDINATED_TOOL:
            result = asyncio.run(coordinator.run(args.get("experts"), supplier, args))
        else:
            results = supplier.fetch(coordinator.manifest_for_tool(tool, args))
            result = coordinator.analyze_tool(tool, results, args)
    else:
        return None

    if ns.llm or cfg.llm_classifier:
        if isinstance(result, CoordinatedReport):
            result = enrich_report(result)
        elif isinstance(result, ExpertOutcome):
            result = enrich_outcome(result)
    return result


def render(result: Any, *, dump_json: Optional[str]) -> str:
    from doctor.core.models import CoordinatedReport, QueryDescriptor
    from doctor.dump import manifest_to_json_list, to_json_payload
    from doctor.report import render_report

    if isinstance(result, CoordinatedReport) and not dump_json:
        return render_report(result)
    if isinstance(result, list) and all(isinstance(d, QueryDescriptor) for d in result):
        payload: Any = manifest_to_json_list(result)
    else:
        payload = to_json_payload(result, mode=dump_json or "report")  # type: ignore[arg-type]
    return json.dumps(payload, indent=2, sort_keys=False)


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Diagnose StarRocks cluster health with rule-based experts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # List experts and their tools
  python main.py --list-experts

  # Print the merged manifest for storage + compaction
  python main.py --manifest --scope storage,compaction

  # Analyze client-executed results
  python main.py --results results.json --scope storage,compaction

  # Direct mode, single tool
  python main.py --live --tool analyze_load_failure --arg label=my_load_1
        """,
    )

    parser.add_argument("--list-experts", action="store_true", help="List registered experts and their tools")
    parser.add_argument("--manifest", action="store_true", help="Print the query manifest JSON for the tool")
    parser.add_argument("--results", metavar="FILE", help="Analyze a JSON ResultSet keyed by query id ('-' for stdin)")
    parser.add_argument("--live", action="store_true", help="Execute the manifest against the configured backends")

    parser.add_argument("--tool", help="Tool to run (default: expert_analysis, the coordinated multi-expert tool)")
    parser.add_argument("--scope", help="Comma-separated experts for expert_analysis (default: DOCTOR_DEFAULT_SCOPE)")
    parser.add_argument(
        "--expert-tool",
        action="append",
        metavar="EXPERT=TOOL",
        help="Per-expert tool override for expert_analysis (repeatable)",
    )
    parser.add_argument("--arg", action="append", metavar="KEY=VALUE", help="Tool argument (repeatable)")
    parser.add_argument(
        "--architecture", choices=["shared_data", "shared_nothing"], help="Skip run-mode detection and use this topology"
    )
    parser.add_argument("--no-cross-module", action="store_true", help="Disable cross-module correlation")
    parser.add_argument(
        "--llm", action="store_true", help="Enable optional LLM failure classification (default: off)"
    )
    parser.add_argument(
        "--dump-json",
        nargs="?",
        const="report",
        choices=["summary", "report"],
        help="Print report JSON instead of Markdown (default: report). Use `summary` for a compact view.",
    )

    ns = parser.parse_args()

    from doctor.core.errors import DoctorError

    try:
        result = run(ns)
    except DoctorError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    if result is None:
        parser.print_help()
        print("\nTip: use `--list-experts` to see available experts")
        return

    print(render(result, dump_json=ns.dump_json))


if __name__ == "__main__":
    main()
