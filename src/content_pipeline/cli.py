import argparse
import asyncio
import json
import logging
import sys

from .config import resolve_config
from .jobs.planner import plan_stages
from .jobs.registry import JobNotFoundError, JobNotRetriableError
from .jobs.retry import RetryController
from .jobs.sqlite_backend import SQLiteContentStore, SQLiteJobStore
from .runtime import build_runtime

logger = logging.getLogger(__name__)


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )


def _open_store(config):
    contents = SQLiteContentStore(config.database.path)
    return contents, SQLiteJobStore(contents)


def _print_job_line(job) -> None:
    print(
        f"{job.id}  {job.type.value:<22} {job.status.value:<11} "
        f"{job.attempt_count}/{job.max_attempts}  {job.content_id or '-'}"
    )


def _serve(args, config) -> None:
    import uvicorn

    from .api.main import app

    app.state.runtime = build_runtime(config)
    uvicorn.run(app, host=args.host, port=args.port, log_level=config.logging.level.lower())


async def _run_worker(runtime, once: bool) -> None:
    if once:
        outcomes = await runtime.poller.poll_once()
        for outcome in outcomes:
            print(f"{outcome.job_id}  {outcome.state}  {outcome.error or ''}".rstrip())
        print(f"Processed {len(outcomes)} jobs")
        return

    try:
        await runtime.poller.run()
    finally:
        await runtime.executor.shutdown()


async def _run_content(runtime, content_id: str, step) -> bool:
    if step:
        enqueued = runtime.enqueuer.enqueue_reprocess(content_id, step)
    else:
        enqueued = runtime.enqueuer.enqueue_pipeline(content_id)

    if enqueued.empty:
        print(f"No processing required for {content_id}")
        return True

    print(f"Running {', '.join(s.value for s in enqueued.stages)}")
    result = await runtime.executor.run_pipeline(enqueued.job_ids, content_id)
    print(f"Completed: {len(result.completed_jobs)}  Skipped: {len(result.skipped_jobs)}")
    if not result.succeeded:
        print(f"Failed at job {result.failed_job}: {result.error}")
    return result.succeeded


def main():
    parser = argparse.ArgumentParser(
        prog="content-pipeline", description="Content processing job pipeline"
    )
    parser.add_argument("--db", dest="db_path", type=str, help="Job database path")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override logging.level",
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SERVE
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP/SSE API")
    serve_parser.add_argument("--host", type=str, default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8000, help="Bind port")
    serve_parser.add_argument("--no-poller", action="store_true", help="Disable the job poller")
    serve_parser.add_argument("--providers", dest="providers_factory", help="module:callable")

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Run the job poller")
    worker_parser.add_argument("--batch-size", type=int, help="Due jobs per tick")
    worker_parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    worker_parser.add_argument("--providers", dest="providers_factory", help="module:callable")

    # RUN
    run_parser = subparsers.add_parser("run", help="Enqueue and run a content pipeline inline")
    run_parser.add_argument("content_id", help="Content id")
    run_parser.add_argument("--reprocess", metavar="STEP", help="Reprocess from STEP instead")
    run_parser.add_argument("--providers", dest="providers_factory", help="module:callable")

    # PLAN
    plan_parser = subparsers.add_parser("plan", help="Show the stages planned for a content type")
    plan_parser.add_argument("content_type", help="recording, video, audio, document or text")
    plan_parser.add_argument("file_type", nargs="?", help="File extension (mp4, pdf, md, ...)")

    # JOBS subcommands (list, show, metrics, retry)
    jobs_parser = subparsers.add_parser("jobs", help="Inspect and retry jobs")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", help="Job commands")

    list_parser = jobs_subparsers.add_parser("list", help="List jobs")
    list_parser.add_argument("--status", choices=["pending", "processing", "completed", "failed"])
    list_parser.add_argument("--type", dest="job_type", help="Job type")
    list_parser.add_argument("--content-id", help="Only jobs of this content")
    list_parser.add_argument("--limit", type=int, default=50, help="Page size")
    list_parser.add_argument("--offset", type=int, default=0, help="Page offset")

    show_parser = jobs_subparsers.add_parser("show", help="Show one job with its transitions")
    show_parser.add_argument("job_id", help="Job id")

    jobs_subparsers.add_parser("metrics", help="Counts by status and average durations")

    retry_parser = jobs_subparsers.add_parser("retry", help="Reset a failed job to pending")
    retry_parser.add_argument("job_id", help="Job id")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return

    if args.command == "plan":
        stages = plan_stages(args.content_type, args.file_type)
        if not stages:
            print("No processing stages (content is ready as uploaded)")
        for i, stage in enumerate(stages, start=1):
            print(f"{i}. {stage.value}")
        return

    # Convert args to dict, filtering None
    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    config = resolve_config(cli_dict)
    _setup_logging(config.logging.level)

    if args.command == "serve":
        _serve(args, config)

    elif args.command == "worker":
        runtime = build_runtime(config)
        try:
            asyncio.run(_run_worker(runtime, args.once))
        except KeyboardInterrupt:
            print("Worker stopped")

    elif args.command == "run":
        runtime = build_runtime(config)
        try:
            succeeded = asyncio.run(_run_content(runtime, args.content_id, args.reprocess))
        except (LookupError, ValueError) as e:
            print(f"Error: {e}")
            sys.exit(1)
        if not succeeded:
            sys.exit(1)

    elif args.command == "jobs":
        contents, store = _open_store(config)

        if args.jobs_command == "list":
            items, total = store.list_jobs(
                status=args.status,
                job_type=args.job_type,
                content_id=args.content_id,
                limit=args.limit,
                offset=args.offset,
            )
            for job in items:
                _print_job_line(job)
            print(f"Showing {len(items)} of {total} jobs")

        elif args.jobs_command == "show":
            job = store.get(args.job_id)
            if job is None:
                print(f"Job not found: {args.job_id}")
                sys.exit(1)
            print(json.dumps(job.model_dump(mode="json"), indent=2))
            print("\nTransitions:")
            for t in store.transitions(args.job_id):
                line = f"  {t.timestamp.isoformat()}  {t.from_state or '-'} -> {t.to_state}"
                if t.error_snippet:
                    line += f"  ({t.error_snippet})"
                print(line)

        elif args.jobs_command == "metrics":
            metrics = store.metrics()
            print("\n" + "=" * 60)
            print("JOB METRICS")
            print("=" * 60)
            for name, count in metrics["counts_by_status"].items():
                print(f"{name.capitalize() + ':':<22}{count}")
            print(f"{'Total:':<22}{metrics['total']}")
            if metrics["average_duration_s_by_type"]:
                print("-" * 60)
                for job_type, avg in sorted(metrics["average_duration_s_by_type"].items()):
                    print(f"{job_type + ':':<22}{avg:.2f}s avg")
            print("=" * 60)

        elif args.jobs_command == "retry":
            try:
                job = RetryController(store, config).manual_retry(args.job_id)
            except (JobNotFoundError, JobNotRetriableError) as e:
                print(f"Error: {e}")
                sys.exit(1)
            if job.content_id:
                contents.clear_error(job.content_id)
            print(f"Job {job.id} reset to pending; the poller will pick it up")

        else:
            jobs_parser.print_help()

    else:
        parser.print_help()


if __name__ == "__main__":
    main()
