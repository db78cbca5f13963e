#!/usr/bin/env python3
"""
CLI entrypoint for processing one document end to end.

    docproc-process run --file report.pdf --owner u1 --scope case-9
    docproc-process status <job-id>
    docproc-process cleanup <job-id>
"""

from __future__ import annotations
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from docproc_exceptions import ConfigError, DocProcError
from config import ProcessorConfig
from ingest import IngestContext, JobPayload, JobRunner, get_job_status
from ingest.validation import guess_mime_from_name
from dotenv import load_dotenv
from tqdm import tqdm
import argparse
import json
import logging
import uuid


class PercentProgressBar:
    """tqdm bar driven by the pipeline's ``on_progress`` events."""

    def __init__(self, enabled: bool = True):
        self.pbar = None
        self._last = 0
        if enabled:
            self.pbar = tqdm(
                total=100,
                desc="initialized",
                unit="%",
                bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt}% [{elapsed}]",
            )

    def __call__(self, event: dict) -> None:
        if self.pbar is None:
            return
        percent = int(event.get("percent") or 0)
        if event.get("phase"):
            self.pbar.set_description(str(event["phase"]))
        if percent > self._last:
            self.pbar.update(percent - self._last)
            self._last = percent

    def close(self) -> None:
        if self.pbar is not None:
            self.pbar.close()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Download, extract, chunk, embed and upsert a single document"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Keep vectors, state and callbacks in memory. Embeddings still call OpenAI.",
    )
    parser.add_argument(
        "--state-backend",
        choices=["redis", "memory"],
        help="Where job state is kept",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Process a document")
    source = run.add_mutually_exclusive_group(required=True)
    source.add_argument("--file", help="Local file to process")
    source.add_argument("--url", help="URL to download and process")
    run.add_argument("--owner", required=True, help="Owner (user) identifier")
    run.add_argument("--scope", required=True, help="Case or library identifier")
    run.add_argument("--scope-type", default="case", choices=["case", "library"])
    run.add_argument("--document-id", help="Document identifier (default: file name)")
    run.add_argument("--job-id", help="Job identifier; reuse one to resume a job")
    run.add_argument("--content-type", help="Declared MIME type")
    run.add_argument("--callback-url", help="Completion callback URL")
    run.add_argument("--callback-secret", help="Signing secret for callbacks")
    run.add_argument("--max-tokens", type=int, help="Chunk size in tokens")
    run.add_argument("--overlap-ratio", type=float, help="Chunk overlap ratio")
    run.add_argument("--page-window", type=int, help="Pages per chunking window")
    run.add_argument(
        "--no-progress",
        action="store_true",
        help="Disable progress bar display",
    )

    status = sub.add_parser("status", help="Show the state of a job")
    status.add_argument("job_id")

    cleanup = sub.add_parser("cleanup", help="Remove scratch data and state for a job")
    cleanup.add_argument("job_id")

    return parser.parse_args(argv)


def build_payload(args: argparse.Namespace) -> JobPayload:
    chunking = {
        key: value
        for key, value in (
            ("maxTokens", args.max_tokens),
            ("overlapRatio", args.overlap_ratio),
            ("pageWindow", args.page_window),
        )
        if value is not None
    }
    if args.file:
        path = Path(args.file)
        file_bytes = path.read_bytes()
        file_name = path.name
    else:
        file_bytes = None
        file_name = args.url.rstrip("/").rsplit("/", 1)[-1].split("?", 1)[0]
    payload = JobPayload(
        owner_id=args.owner,
        scope_id=args.scope,
        scope_type=args.scope_type,
        document_id=args.document_id or file_name,
        source_url=args.url,
        file_bytes=file_bytes,
        declared_content_type=args.content_type or guess_mime_from_name(file_name) or None,
        original_file_name=file_name,
        callback_url=args.callback_url,
        callback_signing_secret=args.callback_secret,
        chunking=chunking or None,
    )
    payload.validate()
    return payload


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = parse_args(argv)

    try:
        config = ProcessorConfig.from_env()
        if args.dry_run:
            config.dry_run = True
        if args.state_backend:
            config.state_backend = args.state_backend
        config.validate()
    except ConfigError as error:
        logging.error("Configuration error: %s", error)
        return 1

    ctx = IngestContext(config)
    try:
        if args.command == "status":
            print(json.dumps(get_job_status(ctx.state_backend, args.job_id), indent=2))
            return 0

        runner = JobRunner(ctx, max_workers=1)
        if args.command == "cleanup":
            runner.cleanup(args.job_id)
            ctx.logger.info("Removed scratch data and state for job %s", args.job_id)
            return 0

        payload = build_payload(args)
        job_id = args.job_id or uuid.uuid4().hex
        bar = PercentProgressBar(enabled=not args.no_progress)
        try:
            outcome = runner.process(job_id, payload, on_progress=bar)
        finally:
            bar.close()
            runner.shutdown()
        summary = {
            "job_id": job_id,
            "status": outcome.status,
            "attempts": outcome.attempts,
            "duration_ms": outcome.duration_ms,
        }
        if outcome.result is not None:
            summary.update(method=outcome.result.method, total_chunks=outcome.result.total_chunks)
        if outcome.error is not None:
            summary["error"] = outcome.error.to_dict()
        print(json.dumps(summary, indent=2))
        return 0 if outcome.status == "completed" else 1
    except KeyboardInterrupt:
        ctx.logger.warning("Interrupted; job state is kept so the job can be resumed.")
        return 130
    except DocProcError as error:
        ctx.logger.error("Processing failed: %s", error, exc_info=True)
        return 1
    finally:
        ctx.close()


if __name__ == "__main__":
    raise SystemExit(main())
