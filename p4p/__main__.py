"""Command line entry point: ``python -m p4p demo``."""

from __future__ import annotations

import argparse
import json
import logging
import sys

from .constants import MODP_1024_PRIME, MODP_2048_PRIME
from .data_models import ProtocolParameters
from .errors import P4PError
from .protocol import run_distributed_demo

GROUPS = {1024: MODP_1024_PRIME, 2048: MODP_2048_PRIME}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="p4p", description="Two-server private vector aggregation with bound proofs")
    parser.add_argument("-v", "--verbose", action="store_true", help="log protocol events")
    sub = parser.add_subparsers(dest="command", required=True)

    demo = sub.add_parser("demo", help="run one round with threaded peers and servers")
    demo.add_argument("--params", help='legacy "m,F,l,N,g,h" parameter string')
    demo.add_argument("--config", help="JSON file with m, F, l, N, g, h and optionally p")
    demo.add_argument("--peers", type=int, default=5)
    demo.add_argument("--cheaters", type=int, default=1)
    demo.add_argument("--dimension", type=int, default=8)
    demo.add_argument("--field", type=int, default=2**31 - 1)
    demo.add_argument("--bits", type=int, default=10, help="l, with norm bound L = 2^l - 1")
    demo.add_argument("--checksums", type=int, default=20, help="N, number of challenge rows")
    demo.add_argument("--group-bits", type=int, choices=sorted(GROUPS), default=1024)
    demo.add_argument("--round", type=int, default=1)
    return parser


def _load_params(args: argparse.Namespace) -> ProtocolParameters | None:
    p = GROUPS[args.group_bits]
    if args.config:
        with open(args.config, encoding="utf-8") as handle:
            data = json.load(handle)
        data.setdefault("p", p)
        return ProtocolParameters.from_dict(data)
    if args.params:
        return ProtocolParameters.from_arg_string(args.params, p=p)
    return None


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(threadName)s %(name)s %(levelname)s: %(message)s",
    )
    try:
        summary = run_distributed_demo(
            num_peers=args.peers,
            dimension=args.dimension,
            F=args.field,
            l=args.bits,
            N=args.checksums,
            p=GROUPS[args.group_bits],
            num_cheaters=args.cheaters,
            round_id=args.round,
            params=_load_params(args),
        )
    except P4PError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0 if summary["aggregate"] == summary["expected"] else 2


if __name__ == "__main__":
    sys.exit(main())
