"""Match evaluation benchmarking script.

Registers synthetic parties, then times each phase of the matching flow
(profile publish, preference submit, single evaluation, batch evaluation,
public elevation). Rows are appended to a CSV; a per-phase summary is
printed and optionally plotted.
"""

from __future__ import annotations

import argparse
import csv
import time
from pathlib import Path
from typing import Dict, Iterable, List

import pandas as pd

from encmatch import EncryptionEngine, MatchService
from encmatch.settings import MatchSettings
from encmatch.synthetic import populate, reference_match


METRICS_DIR = Path("artifacts/metrics")
MATCH_CSV = METRICS_DIR / "match_metrics.csv"

CSV_HEADER = [
    "scenario",
    "population",
    "phase",
    "duration_ms",
    "notes",
]


def append_rows(path: Path, header: List[str], rows: Iterable[Dict[str, object]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    file_exists = path.exists()

    with path.open("a", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=header)
        if not file_exists:
            writer.writeheader()
        for row in rows:
            writer.writerow(row)


def run_population(population: int, rng_seed: int, db_url: str) -> List[Dict[str, object]]:
    engine = EncryptionEngine()
    service = MatchService.from_settings(MatchSettings(database_url=db_url), engine=engine)
    rows: List[Dict[str, object]] = []

    def row(phase: str, seconds: float, notes: str = "") -> None:
        rows.append({
            "scenario": "match_flow",
            "population": population,
            "phase": phase,
            "duration_ms": round(seconds * 1000, 3),
            "notes": notes,
        })

    start = time.perf_counter()
    profiles, preferences = populate(service, engine, population, 1, seed=rng_seed)
    row("register_all", time.perf_counter() - start, f"profiles={population}")

    pref = preferences[0]
    mismatches = 0
    for party in profiles:
        start = time.perf_counter()
        handle = pref.client.compute_match(party.record_id, pref.record_id)
        row("compute_single", time.perf_counter() - start)

        if pref.client.decrypt_match(handle) != reference_match(party.attributes, pref.attributes):
            mismatches += 1

    start = time.perf_counter()
    service.compute_match_handles(pref.client.address, pref.record_id, [p.record_id for p in profiles])
    row("compute_batch", time.perf_counter() - start, f"mismatches={mismatches}")

    start = time.perf_counter()
    pref.client.make_public(profiles[0].record_id, pref.record_id)
    row("make_public", time.perf_counter() - start)

    return rows


def plot_summary(frame: pd.DataFrame, output_path: Path) -> None:
    import matplotlib.pyplot as plt

    pivot = frame.pivot_table(
        index="population", columns="phase", values="duration_ms", aggfunc="median"
    ).sort_index()
    fig, ax = plt.subplots(figsize=(8, 4))
    pivot.plot(ax=ax, marker="o")
    ax.set_title("Match Flow Timing")
    ax.set_ylabel("milliseconds (median)")
    ax.set_xlabel("profiles")
    ax.grid(True, linestyle=":", linewidth=0.8)
    plt.tight_layout()
    fig.savefig(output_path)
    plt.close(fig)
    print(f"wrote {output_path}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Match evaluation benchmarks")
    parser.add_argument(
        "--populations",
        type=int,
        nargs="*",
        default=[5, 20, 50],
        help="Profile counts to benchmark",
    )
    parser.add_argument("--rng-seed", type=int, default=5150, help="Seed for synthetic data")
    parser.add_argument("--db-url", default="sqlite://", help="Store database url")
    parser.add_argument("--plot", action="store_true", help="Write a timing plot")

    args = parser.parse_args()

    all_rows: List[Dict[str, object]] = []
    for population in args.populations:
        all_rows.extend(run_population(population, args.rng_seed + population, args.db_url))

    append_rows(MATCH_CSV, CSV_HEADER, all_rows)
    print(f"wrote {len(all_rows)} rows to {MATCH_CSV}")

    frame = pd.DataFrame(all_rows)
    summary = frame.groupby(["population", "phase"])["duration_ms"].median().unstack()
    print(summary.round(3).to_string())

    if args.plot:
        plot_summary(frame, METRICS_DIR / "match_metrics.png")


if __name__ == "__main__":
    main()
