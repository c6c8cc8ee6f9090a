#!/usr/bin/env python3
"""
CLI Entry Point — run the PKM companion core from a terminal
============================================================
Usage:
    python -m pkm_companion analyze "Some text to analyze" --topics
    python -m pkm_companion analyze --file article.txt --note --detail detailed
    python -m pkm_companion analyze --url https://example.com/post "pasted body"
    python -m pkm_companion models --provider openai
    python -m pkm_companion test-key

Credentials come from the environment / .env (see AISettings.from_env).
The CLI is a thin host around the job queue: every model call still goes
through AppContext → JobQueue → AIService.
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path

from .context import AppContext, create_context
from .errors import ConfigurationError
from .events import EventType
from .models import Job, JobStatus, get_models_by_provider, MODEL_CONFIGS
from .settings import AISettings
from .use_cases import AnalyzeContentRequest, UseCaseResult

logger = logging.getLogger("pkm_companion.cli")


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
        force=True,  # re-apply even if already configured
    )


def _print_progress(event) -> None:
    suffix = f"  {event.message}" if event.message else ""
    print(f"   {event.job_id}  {event.progress:5.1f}%{suffix}", file=sys.stderr)


async def _run_job(ctx: AppContext, job: Job) -> Job:
    await ctx.queue.join()
    if job.status is not JobStatus.COMPLETED:
        print(f"ERROR: {job.type} failed: {job.error}", file=sys.stderr)
    return job


async def _async_analyze(args, ctx: AppContext) -> int:
    if args.file:
        path = Path(args.file)
        if not path.exists():
            print(f"ERROR: File does not exist: {path}", file=sys.stderr)
            return 1
        content = path.read_text(encoding="utf-8")
    else:
        content = args.text or ""
    if not content.strip():
        print("ERROR: Nothing to analyze (pass TEXT or --file)", file=sys.stderr)
        return 1

    request = AnalyzeContentRequest(
        content=content,
        source_type="url" if args.url else "text",
        source_url=args.url,
        language=args.language or ctx.settings.default_language,
        detail_level=args.detail,
    )
    submitted = ctx.submit_analysis(request)
    if isinstance(submitted, UseCaseResult):
        print(f"ERROR: {submitted.error}", file=sys.stderr)
        return 1

    job = await _run_job(ctx, submitted)
    if job.status is not JobStatus.COMPLETED:
        return 1
    output: dict = {"analysis": job.result.to_dict()}

    if args.topics:
        topics_job = await _run_job(ctx, ctx.submit_topic_suggestions(job.result, count=args.count))
        if topics_job.status is not JobStatus.COMPLETED:
            return 1
        output["topics"] = [asdict(t) for t in topics_job.result]

    if args.note:
        note_job = await _run_job(ctx, ctx.submit_permanent_note(job.result))
        if note_job.status is not JobStatus.COMPLETED:
            return 1
        output["note"] = asdict(note_job.result)

    output["cost"] = ctx.ledger.summarize().to_dict()
    print(json.dumps(output, indent=2, ensure_ascii=False, default=str))
    return 0


def cmd_analyze(args) -> int:
    ctx = create_context(AISettings.from_env())
    if not args.quiet:
        ctx.bus.subscribe(EventType.JOB_PROGRESS, _print_progress)
    return asyncio.run(_async_analyze(args, ctx))


def cmd_models(args) -> int:
    configs = get_models_by_provider(args.provider) if args.provider else list(MODEL_CONFIGS.values())
    if not configs:
        print(f"No models known for provider {args.provider!r}", file=sys.stderr)
        return 1
    print(f"{'Model':<28} {'Provider':<8} {'In $/1M':>8} {'Out $/1M':>9} {'Max in':>10}")
    print("-" * 67)
    for cfg in configs:
        print(f"{cfg.id:<28} {cfg.provider.value:<8} {cfg.input_cost_per_1m:>8.3f} "
              f"{cfg.output_cost_per_1m:>9.3f} {cfg.max_input_tokens:>10}")
    return 0


def cmd_test_key(args) -> int:
    ctx = create_context(AISettings.from_env())
    ok = asyncio.run(ctx.service.test_current_api_key())
    print(f"{ctx.settings.provider}: {'OK' if ok else 'FAILED'}")
    return 0 if ok else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pkm-companion",
        description="PKM Companion — LLM job runner for content analysis and notes",
    )
    parser.add_argument("--verbose", "-v", action="store_true")
    subparsers = parser.add_subparsers(dest="subcommand", metavar="SUBCOMMAND")

    ap = subparsers.add_parser("analyze", help="Analyze text and optionally derive notes")
    ap.add_argument("text", nargs="?", default="", help="Text to analyze")
    ap.add_argument("--file", "-f", type=str, default="", help="Read content from this file")
    ap.add_argument("--url", type=str, default=None, help="Source URL of the content")
    ap.add_argument("--detail", choices=["brief", "standard", "detailed"], default="standard")
    ap.add_argument("--language", type=str, default="", help="Response language (default: auto)")
    ap.add_argument("--topics", action="store_true", help="Also suggest permanent note topics")
    ap.add_argument("--count", type=int, default=4, help="Number of topics to suggest")
    ap.add_argument("--note", action="store_true", help="Also generate a permanent note")
    ap.add_argument("--quiet", "-q", action="store_true", help="Do not print progress")
    ap.set_defaults(func=cmd_analyze)

    mp = subparsers.add_parser("models", help="List known models and their rates")
    mp.add_argument("--provider", type=str, default="")
    mp.set_defaults(func=cmd_models)

    kp = subparsers.add_parser("test-key", help="Validate the active provider's API key")
    kp.set_defaults(func=cmd_test_key)
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    func = getattr(args, "func", None)
    if func is None:
        parser.print_help()
        return 1
    try:
        return func(args)
    except ConfigurationError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
