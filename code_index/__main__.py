# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Developer entry point: build an index and optionally look up a symbol.

Usage:
    python -m code_index /path/to/repo [--full] [--find NAME] [--kind class]
"""

import argparse
import sys
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from code_index.config import IndexConfiguration
from code_index.errors import CodeIndexError
from code_index.logging_config import configure_logging
from code_index.models import BuildJob, IndexStatus, SymbolMatch
from code_index.service import IndexService


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="code_index", description="Build a local source index and query it."
    )
    parser.add_argument("root", help="Repository root to index")
    parser.add_argument("--full", action="store_true", help="Force a full build")
    parser.add_argument("--force", action="store_true", help="Re-index unchanged files")
    parser.add_argument("--find", metavar="NAME", help="Look up a symbol after building")
    parser.add_argument("--kind", help="Restrict --find to one symbol kind")
    parser.add_argument("--exact", action="store_true", help="Exact name match only")
    parser.add_argument(
        "--extractor", choices=["structural", "semantic"], help="Override the extractor"
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    parser.add_argument("--plain", action="store_true", help="Plain log output")
    return parser.parse_args(argv)


def _build_table(job: BuildJob, status: IndexStatus) -> Table:
    table = Table(title=f"Build {job.job_id}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Mode", job.mode)
    color = "green" if job.status == "succeeded" else "red"
    table.add_row("Status", f"[{color}]{job.status}[/]")
    table.add_row("Scanned", str(job.scanned_count))
    table.add_row("Changed", str(job.changed_count))
    table.add_row("Deleted", str(job.deleted_count))
    table.add_row("Failed", str(job.failed_count))
    table.add_row("Files", str(status.total_files))
    table.add_row("Symbols", str(status.symbols))
    table.add_row("Coverage", f"{status.coverage:.1%}")
    if job.error:
        table.add_row("Error", job.error)
    return table


def _matches_table(name: str, matches: List[SymbolMatch]) -> Table:
    table = Table(title=f"Matches for '{name}'")
    table.add_column("Name", style="bold")
    table.add_column("Kind", style="cyan")
    table.add_column("Container")
    table.add_column("Location", style="dim")
    for match in matches:
        container = ".".join(p for p in (match.namespace, match.container) if p)
        table.add_row(
            match.name,
            match.kind,
            container,
            f"{match.path}:{match.start_line}-{match.end_line}",
        )
    return table


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    configure_logging(args.log_level, rich_output=not args.plain)
    console = Console()

    overrides = {"watch": False}
    if args.extractor:
        overrides["extractor"] = args.extractor

    try:
        config = IndexConfiguration.discover(args.root, **overrides)
        with IndexService(config) as service:
            mode = "full" if args.full else "incremental"
            job = service.wait(service.build(mode, force=args.force))
            console.print(_build_table(job, service.get_index_status()))
            if job.status != "succeeded":
                return 1
            if args.find:
                matches = service.find_symbol(args.find, kind=args.kind, exact=args.exact)
                if matches:
                    console.print(_matches_table(args.find, matches))
                else:
                    console.print(f"[yellow]No symbols match '{args.find}'[/]")
    except (CodeIndexError, ValueError) as e:
        console.print(f"[red]Error:[/] {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
