"""Forward JSON-lines detections from a sensor bridge to ``/signals/batch``.

Each non-blank line is one detection object in any shape the ingestion
endpoint accepts (``lng``, nested ``location``, ISO timestamps, source aliases).
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, TextIO

import requests

DEFAULT_BACKEND = "http://localhost:8000"
DEFAULT_BATCH_SIZE = 500


def read_detections(stream: TextIO) -> Iterator[Dict]:
    for line_no, line in enumerate(stream, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            yield json.loads(line)
        except json.JSONDecodeError as exc:
            raise ValueError(f"line {line_no}: invalid JSON ({exc.msg})") from None


def batched(detections: Iterable[Dict], size: int) -> Iterator[List[Dict]]:
    batch: List[Dict] = []
    for detection in detections:
        batch.append(detection)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def post_batch(backend: str, batch: List[Dict], token: Optional[str] = None, timeout: float = 10.0) -> Dict:
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    resp = requests.post(f"{backend.rstrip('/')}/signals/batch", json={"signals": batch}, headers=headers, timeout=timeout)
    resp.raise_for_status()
    return resp.json()


def forward(stream: TextIO, backend: str, batch_size: int, token: Optional[str] = None) -> Dict[str, int]:
    totals = {"batches": 0, "inserted": 0, "rejected": 0}
    for batch in batched(read_detections(stream), batch_size):
        result = post_batch(backend, batch, token)
        totals["batches"] += 1
        totals["inserted"] += result.get("insertedCount", 0)
        totals["rejected"] += len(result.get("rejected", []))
        print(
            f"batch {totals['batches']}: inserted {result.get('insertedCount', 0)}"
            f" of {result.get('totalReceived', len(batch))}"
        )
        for rejected in result.get("rejected", []):
            print(f"  rejected #{rejected.get('index')} ({rejected.get('id')}): {rejected.get('reason')}", file=sys.stderr)
    return totals


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Post JSON-lines RF detections to the signal store")
    parser.add_argument("source", help="JSON-lines file, or - for stdin")
    parser.add_argument("--backend", default=DEFAULT_BACKEND, help="FastAPI backend URL")
    parser.add_argument("--batch-size", type=int, default=DEFAULT_BATCH_SIZE)
    parser.add_argument("--token", default=None, help="bearer token, if the backend requires one")
    args = parser.parse_args(argv)

    if args.batch_size < 1:
        parser.error("--batch-size must be at least 1")

    if args.source == "-":
        totals = forward(sys.stdin, args.backend, args.batch_size, args.token)
    else:
        with Path(args.source).open(encoding="utf-8") as stream:
            totals = forward(stream, args.backend, args.batch_size, args.token)
    print(f"done: {totals['inserted']} inserted, {totals['rejected']} rejected in {totals['batches']} batches")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
