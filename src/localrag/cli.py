"""
localrag command line interface.

    localrag ingest PATH -c COLL [--force] [--no-cleanup]
    localrag query TEXT -c COLL [-k K] [--min-score S] [--json]
    localrag chat TEXT -c COLL
    localrag enqueue PATH -c COLL
    localrag jobs
    localrag cancel JOB_ID
    localrag worker [--once]
    localrag info -c COLL
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .localrag_exceptions import LocalRagError
from .logging_config import reconfigure_log_directory

console = Console()
err_console = Console(stderr=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="localrag",
        description="Local retrieval engine: ingest documents, query and chat over them",
    )
    parser.add_argument("--project", "-p", type=Path, default=None,
                        help="Project root holding localrag.json (default: current directory)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Ingest a directory now")
    ingest.add_argument("path", help="Source directory")
    ingest.add_argument("-c", "--collection", required=True)
    ingest.add_argument("--force", action="store_true", help="Re-embed unchanged files")
    ingest.add_argument("--no-cleanup", action="store_true", help="Keep vectors of deleted files")
    ingest.add_argument("--no-console", action="store_true", help="Disable the progress display")

    query = sub.add_parser("query", help="Search a collection")
    query.add_argument("text")
    query.add_argument("-c", "--collection", required=True)
    query.add_argument("-k", "--top-k", type=int, default=None)
    query.add_argument("--min-score", type=float, default=None)
    query.add_argument("--json", action="store_true", help="Print hits as JSON")

    chat = sub.add_parser("chat", help="Ask a question answered from a collection")
    chat.add_argument("text")
    chat.add_argument("-c", "--collection", required=True)

    enqueue = sub.add_parser("enqueue", help="Queue an ingestion job")
    enqueue.add_argument("path", help="Absolute source directory")
    enqueue.add_argument("-c", "--collection", required=True)

    sub.add_parser("jobs", help="List queued jobs")

    cancel = sub.add_parser("cancel", help="Cancel a pending job")
    cancel.add_argument("job_id")

    worker = sub.add_parser("worker", help="Run queued jobs")
    worker.add_argument("--once", action="store_true", help="Drain pending jobs, then exit")

    info = sub.add_parser("info", help="Show collection statistics")
    info.add_argument("-c", "--collection", required=True)

    return parser


def _cmd_ingest(engine, args) -> int:
    use_console = not args.no_console and sys.stderr.isatty()
    if not use_console:
        report = engine.ingest(
            args.path, args.collection, force=args.force,
            cleanup_orphans=not args.no_cleanup,
            progress=lambda message: logging.getLogger("localrag").info(message),
        )
        console.print(report.summary())
        return 0 if not report.errored else 2

    from .services.console_progress import ConsoleProgress, create_progress_callback

    progress = ConsoleProgress(args.collection)
    progress.start()
    try:
        report = engine.ingest(
            args.path, args.collection, force=args.force,
            cleanup_orphans=not args.no_cleanup,
            progress=create_progress_callback(progress),
        )
    except LocalRagError as e:
        progress.stop(error=str(e))
        raise
    progress.stop(report=report)
    return 0 if not report.errored else 2


def _cmd_query(engine, args) -> int:
    hits = engine.query(args.text, args.collection, k=args.top_k, min_score=args.min_score)
    if args.json:
        print(json.dumps([hit.to_dict() for hit in hits], indent=2, ensure_ascii=False))
        return 0
    if not hits:
        console.print("No relevant local documents found.")
        return 0

    table = Table(title=f"Results for: {escape(args.text)}")
    table.add_column("Score", justify="right")
    table.add_column("File")
    table.add_column("Context")
    table.add_column("Preview", overflow="fold")
    for hit in hits:
        table.add_row(
            f"{hit.score:.3f}",
            escape(hit.metadata.file_name),
            escape(hit.metadata.header_context),
            escape(hit.metadata.text_preview),
        )
    console.print(table)
    return 0


def _cmd_chat(engine, args) -> int:
    exit_code = 0
    citations = []
    for event in engine.chat(args.text, args.collection):
        if event.type == event.STATUS:
            err_console.print(f"[dim]{escape(event.data)}[/dim]")
        elif event.type == event.CITATIONS:
            citations = event.data
        elif event.type == event.TOKEN:
            sys.stdout.write(event.data)
            sys.stdout.flush()
        elif event.type == event.ERROR:
            err_console.print(f"[red]Error:[/red] {escape(event.data)}")
            exit_code = 1
    sys.stdout.write("\n")
    for citation in citations:
        console.print(
            f"[dim][Source: {escape(citation['fileName'])}] "
            f"{escape(citation['headerContext'])} ({citation['score']:.3f})[/dim]"
        )
    return exit_code


def _cmd_enqueue(engine, args) -> int:
    job = engine.queue.enqueue(args.path, args.collection)
    console.print(f"Queued job {job.id}: {escape(job.path)} -> {job.collection}")
    return 0


def _cmd_jobs(engine, args) -> int:
    jobs = engine.queue.get_jobs()
    if not jobs:
        console.print("Queue is empty.")
        return 0
    table = Table()
    for column in ("ID", "Status", "Collection", "Path", "Progress", "Created"):
        table.add_column(column)
    for job in jobs:
        table.add_row(
            job.id, job.status.value, job.collection, escape(job.path),
            escape(job.error or job.progress or ""), job.created_at,
        )
    console.print(table)
    return 0


def _cmd_cancel(engine, args) -> int:
    if engine.queue.cancel(args.job_id):
        console.print(f"Cancelled job {args.job_id}")
        return 0
    err_console.print(f"Job {args.job_id} is not pending (or does not exist)")
    return 1


def _cmd_worker(engine, args) -> int:
    queue = engine.queue
    if args.once:
        while queue.process_next() is not None:
            pass
        return 0

    queue.start()
    console.print("Worker running. Press Ctrl+C to stop.")
    try:
        while queue.is_running:
            queue.wait_idle(timeout=1.0)
    except KeyboardInterrupt:
        console.print("Stopping worker after the current job...")
    finally:
        queue.stop()
    return 0


def _cmd_info(engine, args) -> int:
    print(json.dumps(engine.collection_info(args.collection), indent=2))
    return 0


COMMANDS = {
    "ingest": _cmd_ingest,
    "query": _cmd_query,
    "chat": _cmd_chat,
    "enqueue": _cmd_enqueue,
    "jobs": _cmd_jobs,
    "cancel": _cmd_cancel,
    "worker": _cmd_worker,
    "info": _cmd_info,
}


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point. Returns the process exit code."""
    args = build_parser().parse_args(argv)

    if args.project:
        os.environ["LOCALRAG_PROJECT_ROOT"] = str(args.project.resolve())

    from .engine import RagEngine
    from .services.config_loader import load_config

    try:
        config = load_config(args.project.resolve() if args.project else None)
        os.environ["LOCALRAG_DATA_DIR"] = str(config.data_dir)
        reconfigure_log_directory()
        if not args.verbose:
            for handler in logging.getLogger("localrag").handlers:
                if not isinstance(handler, logging.FileHandler):
                    handler.setLevel(logging.WARNING)

        with RagEngine(config) as engine:
            return COMMANDS[args.command](engine, args)
    except LocalRagError as e:
        err_console.print(f"[red]Error:[/red] {escape(str(e))}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
