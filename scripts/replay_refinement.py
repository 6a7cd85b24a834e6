#!/usr/bin/env python3
"""Replay a refinement request against saved bounds and a saved model answer.

Runs the full flow offline: request validation, prompt building,
response parsing, constraint validation and delta analysis.  With
``--live`` the model is called for real (needs ``OPENAI_API_KEY``).

Usage:
    python scripts/replay_refinement.py request.json bounds.json \\
        --response model_answer.txt [--out result.json]
    python scripts/replay_refinement.py request.json bounds.json --live
"""
import argparse
import json
import logging
import sys
from pathlib import Path

from morph_refine import (
    DEFAULT_THRESHOLDS, AIGateway, ModelResponse, RefinementService,
    StaticBoundsProvider,
)


class ReplayTransport:
    """Returns a saved model answer instead of calling the endpoint."""

    def __init__(self, content: str, finish_reason: str = "stop"):
        self.content = content
        self.finish_reason = finish_reason

    def complete(self, prompt, photo_urls):
        return ModelResponse(content=self.content,
                             finish_reason=self.finish_reason)


def main(argv=None):
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("request", type=Path,
                        help="request payload (JSON)")
    parser.add_argument("bounds", type=Path,
                        help='bounds file: {"db": {gender: ...}, "k5": ...}')
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--response", type=Path,
                        help="saved raw model answer (text)")
    source.add_argument("--live", action="store_true",
                        help="call the model endpoint")
    parser.add_argument("--finish-reason", default="stop",
                        help="finish reason of the saved answer")
    parser.add_argument("--timeout", type=float, default=90.0)
    parser.add_argument("--set", action="append", default=[],
                        metavar="KEY=VALUE",
                        help="override a threshold, e.g. "
                             "coherence.adiposity_high=0.8 (repeatable)")
    parser.add_argument("--out", type=Path, help="write the response here")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )

    thresholds = DEFAULT_THRESHOLDS
    if args.set:
        overrides = {}
        for item in args.set:
            key, _, value = item.partition("=")
            try:
                overrides[key] = float(value)
            except ValueError:
                parser.error(f"--set expects KEY=VALUE, got {item!r}")
        try:
            thresholds = DEFAULT_THRESHOLDS.replace(overrides, name="replay")
        except KeyError as exc:
            parser.error(str(exc))

    payload = json.loads(args.request.read_text(encoding="utf-8"))
    provider = StaticBoundsProvider.from_json(args.bounds)
    if args.live:
        gateway = AIGateway.from_env()
    else:
        gateway = AIGateway(ReplayTransport(
            args.response.read_text(encoding="utf-8"), args.finish_reason))

    with RefinementService(provider, gateway, thresholds=thresholds,
                           timeout_s=args.timeout) as service:
        status, body = service.handle(payload)

    print(f"status: {status}")
    print("=" * 70)
    if status != 200:
        print(f"error: {body.get('error')}")
        return 1

    print(f"ai_refine:        {body['ai_refine']}")
    print(f"ai_confidence:    {body['ai_confidence']:.2f}")
    if body.get("error_occurred"):
        print(f"fallback reason:  {body['error_message']}")
    else:
        print(f"corrections:      {body['out_of_range_count']}")
        print(f"  envelope        {', '.join(body['envelope_violations']) or '-'}")
        print(f"  db              {', '.join(body['db_violations']) or '-'}")
        print(f"  gender          {', '.join(body['gender_violations']) or '-'}")
        print(f"missing added:    {', '.join(body['missing_keys_added']) or '-'}")
        print(f"extra removed:    {', '.join(body['extra_keys_removed']) or '-'}")
        print(f"active keys:      {body['active_keys_count']}")
        print()
        print("Top shape deltas:")
        for d in body["refinement_deltas"]["top_10_shape_deltas"]:
            print(f"  {d['key']:24s} {d['blend']:+.3f} → {d['final']:+.3f}"
                  f"  (Δ {d['delta']:.3f})")

    if args.out:
        args.out.write_text(json.dumps(body, indent=2, sort_keys=True),
                            encoding="utf-8")
        print(f"\nwrote {args.out}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
