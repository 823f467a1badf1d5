import argparse
import asyncio
import json
import logging
import os
import sys

import uvicorn

from ptx_workload import errors
from ptx_workload.config import load_config
from ptx_workload.logging_config import setup_logging
from ptx_workload.scenarios import Harness, HarnessContext

log = logging.getLogger("ptx_workload.cli")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="ptx-workload")
    parser.add_argument("-c", "--config", help="TOML file layered over the packaged defaults")
    parser.add_argument("--simulated", action="store_true", help="Run against the in-memory ledger")
    parser.add_argument("--log-level", help="Overrides LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    fund = sub.add_parser("fund", help="Provision and fund the account pool")
    fund.add_argument("-n", "--count", type=int, help="Number of accounts")
    fund.add_argument("--total", type=int, help="Drops to distribute")
    fund.add_argument("--serial", action="store_true", help="One transfer per account from the seed")

    tp = sub.add_parser("throughput", help="Generate, submit and confirm batches")
    tp.add_argument("-b", "--batch-size", type=int, required=True)
    tp.add_argument("-k", "--concurrency", type=int, help="Submission channels")
    tp.add_argument("--batches", type=int, default=1)
    tp.add_argument("--amount", type=int)
    tp.add_argument("--pattern", choices=["pairwise", "ring"])

    cons = sub.add_parser("consistency", help="Run a transfer graph and verify balances")
    cons.add_argument("--graph", help="JSON file of [sender, recipient, amount] edges")
    cons.add_argument("-k", "--concurrency", type=int)
    cons.add_argument("--amount", type=int, help="Drops per transfer of the default graph")

    gen = sub.add_parser("generate", help="Pre-sign transactions into a snapshot")
    gen.add_argument("-b", "--batch-size", type=int, required=True)
    gen.add_argument("--batches", type=int, default=1)
    gen.add_argument("--amount", type=int)
    gen.add_argument("-o", "--output")

    rep = sub.add_parser("replay", help="Submit a pre-signed snapshot")
    rep.add_argument("-i", "--input")
    rep.add_argument("-k", "--concurrency", type=int)

    bench = sub.add_parser("bench", help="Measure signing rate")
    bench.add_argument("-n", "--count", type=int, default=1000)

    return parser.parse_args(argv)


async def run_command(args, harness: Harness) -> dict:
    # The in-memory ledger starts empty every run, so the pool is funded first
    if args.simulated and args.command in ("throughput", "consistency", "generate"):
        await harness.run_funding_scenario()

    match args.command:
        case "fund":
            res = await harness.run_funding_scenario(None, args.count, total_fund=args.total, serial=args.serial)
            return {"accounts": len(res.accounts), "rounds": res.rounds, "total_fund": str(res.total_fund)}
        case "throughput":
            res = await harness.run_throughput_scenario(
                args.batch_size, args.concurrency, batches=args.batches, amount=args.amount, pattern=args.pattern
            )
            return {"count": res.count, "elapsed": res.elapsed, "tps": res.tps, "submitted": res.submitted,
                    "included": res.included, "failures": res.failures, "error": res.error}
        case "consistency":
            graph = None
            if args.graph:
                with open(args.graph, encoding="utf-8") as f:
                    graph = [tuple(e) for e in json.load(f)]
            report = await harness.run_consistency_scenario(graph, args.concurrency, amount=args.amount)
            return {"ok": report.ok, "accounts": len(report.expected),
                    "mismatches": [{"address": m.address, "expected": str(m.expected), "observed": str(m.observed)}
                                   for m in report.mismatches],
                    "failures": list(report.failures)}
        case "generate":
            txns = await harness.generate_transactions(
                args.output, batch_size=args.batch_size, batches=args.batches, amount=args.amount
            )
            return {"generated": len(txns)}
        case "replay":
            res = await harness.replay_transactions(args.input, args.concurrency)
            return {"count": res.count, "elapsed": res.elapsed, "tps": res.tps, "included": res.included,
                    "failures": res.failures}
        case "bench":
            return harness.bench_signing(args.count)
    raise ValueError(f"unknown command {args.command}")


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.log_level)

    if args.command == "serve":
        if args.config:
            os.environ["PTX_CONFIG"] = args.config
        if args.simulated:
            os.environ["PTX_SIMULATED"] = "1"
        uvicorn.run("ptx_workload.app:build_app", factory=True, host=args.host, port=args.port, lifespan="on")
        return

    cfg = load_config(args.config)
    harness = Harness(HarnessContext.from_config(cfg, simulated=args.simulated))
    try:
        out = asyncio.run(run_command(args, harness))
    except (errors.WorkloadError, ValueError) as e:
        log.error("%s failed: %s", args.command, e)
        sys.exit(1)
    print(json.dumps(out, indent=2, default=str))


if __name__ == "__main__":
    main()
