"""
Command-line entry point.

Usage:
    session-transcriber submit https://example.org/meeting.mp4 --owner clerk --wait
    session-transcriber worker
    session-transcriber status <job-id>
    session-transcriber list --owner clerk
    session-transcriber cancel <job-id>
"""

import argparse
import json
import logging
import signal
import sys
import threading
from typing import List, Optional

from .config import ConfigManager, PipelineSettings
from .errors import JobNotFoundError
from .server import FileJobStore, JobManager, JobOptions, JobOrchestrator, JobStatus

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="session-transcriber",
        description="Transcribe long meeting recordings into speaker-attributed transcripts.",
    )
    parser.add_argument("--jobs-dir", type=str, default=None, help="Job store directory (overrides JOBS_DIR).")
    parser.add_argument("--log-level", type=str, default=None, help="Log level (overrides LOG_LEVEL).")
    commands = parser.add_subparsers(dest="command", required=True)

    submit = commands.add_parser("submit", help="Create a transcription job.")
    submit.add_argument("source", help="Recording URL or local file path.")
    submit.add_argument("--title", type=str, default="", help="Document title (defaults to the source title).")
    submit.add_argument("--owner", type=str, default="cli", help="Owner id recorded on the job.")
    submit.add_argument("--association-id", type=str, default=None, help="Meeting record the job belongs to.")
    submit.add_argument("--no-sentiment", action="store_true", help="Omit sentiment and credibility labels.")
    submit.add_argument("--no-speakers", action="store_true", help="Keep generic speaker labels.")
    submit.add_argument("--wait", action="store_true", help="Process the job now instead of leaving it for a worker.")

    worker = commands.add_parser("worker", help="Process pending jobs until interrupted.")
    worker.add_argument("--poll-interval", type=float, default=5.0, help="Seconds between checks for new jobs.")

    status = commands.add_parser("status", help="Show a job record.")
    status.add_argument("job_id")
    status.add_argument("--result", action="store_true", help="Include the stored result of a completed job.")

    list_jobs = commands.add_parser("list", help="List an owner's jobs, newest first.")
    list_jobs.add_argument("--owner", type=str, default="cli")
    list_jobs.add_argument("--limit", type=int, default=20)

    cancel = commands.add_parser("cancel", help="Cancel a pending job.")
    cancel.add_argument("job_id")

    return parser


def print_json(data) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2))


def run_worker(orchestrator: JobOrchestrator, poll_interval: float) -> int:
    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    orchestrator.start(recover=True)
    try:
        while not stop.is_set():
            orchestrator.sweep_jobs()
            orchestrator.enqueue_pending_jobs()
            stop.wait(poll_interval)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        orchestrator.stop(wait=True)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    log_level = str(ConfigManager.get("LOG_LEVEL", args.log_level)).upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    overrides = {"JOBS_DIR": args.jobs_dir, "LOG_LEVEL": args.log_level}
    for key in ConfigManager.DEFAULTS:
        logger.debug(ConfigManager.describe(key, overrides.get(key)))

    settings = PipelineSettings.from_env(jobs_dir=args.jobs_dir)
    if args.command in ("submit", "worker"):
        orchestrator = JobOrchestrator.from_settings(settings)
    else:
        # Queries only read the job store; no providers needed
        orchestrator = JobOrchestrator(JobManager(FileJobStore(settings.jobs_dir)))

    if args.command == "submit":
        options = JobOptions(
            association_id=args.association_id,
            include_sentiment=not args.no_sentiment,
            identify_speakers=not args.no_speakers,
        )
        job = orchestrator.create_job(args.owner, args.source, args.title, options)
        if args.wait:
            try:
                orchestrator.run_job(job.id)
            except Exception as e:
                logger.error(f"Job {job.id} failed: {e}")
            job = orchestrator.get_job(job.id)
        print_json(job.to_dict())
        return 1 if job.status == JobStatus.FAILED else 0

    if args.command == "worker":
        return run_worker(orchestrator, args.poll_interval)

    if args.command == "status":
        job = orchestrator.get_job(args.job_id)
        if job is None:
            print(f"Job not found: {args.job_id}", file=sys.stderr)
            return 1
        data = job.to_dict()
        if args.result:
            data["result"] = orchestrator.get_result(args.job_id)
        print_json(data)
        return 0

    if args.command == "list":
        print_json([job.to_dict() for job in orchestrator.list_jobs_for_owner(args.owner, args.limit)])
        return 0

    if args.command == "cancel":
        try:
            cancelled = orchestrator.cancel_job(args.job_id)
        except JobNotFoundError as e:
            print(str(e), file=sys.stderr)
            return 1
        print_json({"job_id": args.job_id, "cancelled": cancelled})
        return 0 if cancelled else 1

    return 2


if __name__ == "__main__":
    sys.exit(main())
