#!/usr/bin/env python3
"""
Grid sweep over consensus-clustering FL settings.

Each grid point is launched once per seed as its own ``run_experiment.py``
process, so one crashing configuration never takes the sweep down with it.
MLflow logging happens inside the child runs; this driver only keeps the
child output and a status report.
"""

import argparse
import itertools
import json
import subprocess
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List

RUN_TIMEOUT_SECONDS = 3600
CHECKPOINT_EVERY = 10
STATUSES = ("success", "failed", "timeout", "error")

GRID = {
    "num-server-rounds": [10],
    "num-clients": [10],
    "clients-per-round": [5, 10],
    "dataset": ["synthetic"],
    "non-iid-mode": ["pairs", "groups"],
    "clustering-method": ["louvain", "leiden", "kmeans", "spectral"],
    "use-consensus": [False, True],
    "distance-metric": ["cosine", "l2"],
    "assignment-method": ["1NN", "probabilistic"],
    "aggregation-method": ["fedavg", "median"],
    "client-aggregation": ["none", "50-50", "gravity"],
}

SWEEP_SEEDS = [42, 43, 44]

# Consensus voting runs Leiden in place of these methods
NON_GRAPH_METHODS = {"kmeans", "spectral"}


def grid_size() -> int:
    """Number of raw grid points times seeds, before pruning."""
    size = len(SWEEP_SEEDS)
    for options in GRID.values():
        size *= len(options)
    return size


def canonical(point: Dict[str, Any]) -> Dict[str, Any]:
    """Rewrite settings to the clustering that will actually run."""
    if point["clustering-method"] in NON_GRAPH_METHODS and point["use-consensus"]:
        return {**point, "clustering-method": "leiden"}
    return dict(point)


def iter_runs() -> Iterator[Dict[str, Any]]:
    """Yield each distinct runnable setting once per seed."""
    names = list(GRID)
    emitted = set()
    for combo in itertools.product(*(GRID[name] for name in names)):
        point = dict(zip(names, combo))
        if point["clients-per-round"] > point["num-clients"]:
            continue
        point = canonical(point)
        fingerprint = tuple(sorted(point.items()))
        if fingerprint in emitted:
            continue
        emitted.add(fingerprint)
        for seed in SWEEP_SEEDS:
            yield {**point, "seed": seed}


def to_run_config(point: Dict[str, Any]) -> str:
    """Render settings in the ``key=value`` form understood by run_experiment.py."""
    tokens = []
    for key, value in point.items():
        if isinstance(value, bool):
            value = "true" if value else "false"
        elif isinstance(value, str):
            value = f"'{value}'"
        tokens.append(f"{key}={value}")
    return " ".join(tokens)


def _write_logs(run_id: int, process: subprocess.CompletedProcess, logs_dir: Path) -> Dict[str, str]:
    logs_dir.mkdir(parents=True, exist_ok=True)
    paths = {}
    for stream in ("stdout", "stderr"):
        path = logs_dir / f"run_{run_id:05d}.{stream}.log"
        path.write_text(getattr(process, stream) or "")
        paths[f"{stream}_log"] = str(path)
    return paths


def launch(point: Dict[str, Any], run_id: int, logs_dir: Path) -> Dict[str, Any]:
    """Run one setting in a child process and report how it went.

    Args:
        point: Settings for this run, including its seed
        run_id: Sequential id used in log file names
        logs_dir: Where child stdout and stderr are written

    Returns:
        Record with status, timing and the tail of stderr on failure
    """
    print(f"\n{'-' * 80}")
    print(f"Run #{run_id}")
    for key, value in point.items():
        print(f"  {key:<20} {value}")
    print("-" * 80)

    runner = Path(__file__).resolve().parent / "run_experiment.py"
    command = [sys.executable, str(runner), "--run-config", to_run_config(point)]
    record: Dict[str, Any] = {
        "experiment_id": run_id,
        "config": point,
        "start_time": datetime.now().isoformat(),
        "command": " ".join(command),
        "status": "error",
        "duration_seconds": 0.0,
        "error": None,
    }

    began = time.monotonic()
    try:
        process = subprocess.run(
            command, capture_output=True, text=True, timeout=RUN_TIMEOUT_SECONDS
        )
    except subprocess.TimeoutExpired:
        record["status"] = "timeout"
        record["error"] = f"No result after {RUN_TIMEOUT_SECONDS}s"
    except OSError as exc:
        record["error"] = str(exc)
    else:
        record.update(_write_logs(run_id, process, logs_dir))
        if process.returncode == 0:
            record["status"] = "success"
        else:
            record["status"] = "failed"
            record["error"] = (process.stderr or "")[-500:] or f"exit code {process.returncode}"
    record["duration_seconds"] = time.monotonic() - began
    record["end_time"] = datetime.now().isoformat()

    print(f"Run #{run_id}: {record['status']} ({record['duration_seconds']:.1f}s)")
    if record["error"] and record["status"] != "failed":
        print(f"  {record['error']}")
    return record


def write_report(records: List[Dict[str, Any]], output_dir: Path, final: bool = False) -> Path:
    """Dump the run records as JSON and a plain-text status report."""
    output_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    kind = "final" if final else "checkpoint"

    records_path = output_dir / f"{kind}_runs_{stamp}.json"
    records_path.write_text(json.dumps(records, indent=2))

    counts = {status: 0 for status in STATUSES}
    for record in records:
        counts[record["status"]] = counts.get(record["status"], 0) + 1
    elapsed = sum(record["duration_seconds"] for record in records)

    lines = [f"Sweep report ({kind})", "", f"runs: {len(records)}"]
    lines += [f"{status}: {count}" for status, count in counts.items()]
    if records:
        lines.append(f"wall time: {elapsed:.1f}s (mean {elapsed / len(records):.1f}s)")
    lines.append("")
    for record in records:
        lines.append(f"#{record['experiment_id']} {record['status']}: {to_run_config(record['config'])}")
        if record["error"]:
            lines.append(f"    {record['error'].strip().splitlines()[-1]}")
    report_path = output_dir / f"{kind}_report_{stamp}.txt"
    report_path.write_text("\n".join(lines) + "\n")

    if final:
        print(f"\nRecords: {records_path}")
        print(f"Report:  {report_path}")
    return records_path


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--output-dir", default="results/experiment_runs")
    parser.add_argument("--limit", type=int, default=0, help="Stop after this many runs (0: all)")
    args = parser.parse_args()

    output_dir = Path(args.output_dir)
    print("=" * 80)
    print("Consensus Clustering FL - Configuration Sweep")
    print("=" * 80)
    print(f"Raw grid points (with seeds): {grid_size():,}")

    records = []
    began = time.monotonic()
    for run_id, point in enumerate(iter_runs(), start=1):
        records.append(launch(point, run_id, output_dir / "logs"))
        if run_id % CHECKPOINT_EVERY == 0:
            write_report(records, output_dir)
        if args.limit and run_id >= args.limit:
            break

    if not records:
        print("Nothing to run.")
        return

    succeeded = sum(1 for record in records if record["status"] == "success")
    print("\n" + "=" * 80)
    print(f"Sweep finished: {succeeded}/{len(records)} runs succeeded "
          f"in {time.monotonic() - began:.1f}s")
    print("=" * 80)
    write_report(records, output_dir, final=True)


if __name__ == "__main__":
    main()
