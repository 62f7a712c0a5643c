import argparse
from pathlib import Path
from typing import List, Optional

from data_loading_functions import DATA_DIR
from tutorial_functions import TUTORIALS, TutorialReport, run_tutorial


def print_report(report: TutorialReport) -> None:
    status = "✅" if report.status == "completed" else "⚠️"
    print(f"{status} {report.name}: {report.status}, {len(report.steps_done)}/{len(TUTORIALS[report.name])} steps")
    if report.reason:
        print(f"    {report.reason}")


def run(argv: Optional[List[str]] = None) -> List[TutorialReport]:
    parser = argparse.ArgumentParser(description="Walk through the GAM tutorials with pyGAM.")
    parser.add_argument("tutorials", nargs="*", help=f"tutorials to run, all when empty: {sorted(TUTORIALS)}")
    parser.add_argument("--data-dir", type=Path, default=DATA_DIR, help="folder with the tutorial csv files")
    parser.add_argument("--plots", action="store_true", help="show the figures")
    parser.add_argument("--track", action="store_true", help="log every fitted model to mlflow")
    args = parser.parse_args(argv)
    unknown = [name for name in args.tutorials if name not in TUTORIALS]
    if unknown:
        parser.error(f"unknown tutorials {unknown}, choose from {sorted(TUTORIALS)}")

    reports = [
        run_tutorial(name, data_dir=args.data_dir, plots=args.plots, tracking=args.track)
        for name in (args.tutorials or list(TUTORIALS))
    ]
    print("\n==== summary ====")
    for report in reports:
        print_report(report)
    return reports


def main() -> None:
    run()


if __name__ == "__main__":
    main()
