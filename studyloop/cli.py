"""
StudyLoop CLI.

Usage:
    studyloop ask alice "Why does the derivative of x^2 equal 2x?"
    studyloop scan alice ./photo.jpg
    studyloop challenge alice --topic algebra --topic calculus
    studyloop complete alice 0=1 1=0 2=1
    studyloop plan alice --exam-date 2026-06-01 --topic algebra=2 --topic calculus=1
    studyloop research alice "spaced repetition"
    studyloop past-papers alice ./questions.txt
    studyloop proficiency alice
    studyloop export alice -o alice.json
    studyloop sweep
"""

from __future__ import annotations

import asyncio
import base64
import json
import sys
import uuid
from datetime import date
from pathlib import Path
from typing import Annotated, Any

import typer
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from studyloop.config import Settings, get_settings
from studyloop.core.models import utcnow
from studyloop.engine.run import RunStatus
from studyloop.errors import InvalidInput, StudyLoopError, WorkflowFailed, public_error
from studyloop.service import StudyLoop, build_studyloop
from studyloop.workflows import WorkflowType

# =============================================================================
# CLI Setup
# =============================================================================

app = typer.Typer(
    name="studyloop",
    help="Adaptive study orchestration: questions, challenges, plans and research",
    add_completion=False,
    rich_markup_mode="rich",
)

console = Console()

_overrides: dict[str, Any] = {}


def get_config() -> Settings:
    """Settings with any command-line overrides applied."""
    settings = get_settings()
    overrides = {k: v for k, v in _overrides.items() if v is not None}
    return settings.model_copy(update=overrides) if overrides else settings


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | {message}",
    )


def _fail(exc: StudyLoopError, correlation_id: str | None = None) -> None:
    envelope = public_error(exc, correlation_id or uuid.uuid4().hex)
    console.print(f"[red]Error:[/] {envelope['code']} [dim](ref {envelope['correlation_id']})[/]")
    if isinstance(exc, InvalidInput) and exc.fields:
        console.print(f"[yellow]Check:[/] {', '.join(exc.fields)}")
    if isinstance(exc, WorkflowFailed):
        console.print(f"[dim]Step {exc.failed_step}: {exc.last_error_code}[/]")
    raise typer.Exit(2 if isinstance(exc, InvalidInput) else 1)


def _call(coro_fn) -> Any:
    """Run an async operation against a freshly wired engine."""

    async def _go():
        async with build_studyloop(get_config()) as loop:
            return await coro_fn(loop)

    try:
        return asyncio.run(_go())
    except StudyLoopError as exc:
        _fail(exc)


async def _run_workflow(loop: StudyLoop, workflow_type: WorkflowType, payload: dict) -> Any:
    run_id = await loop.start_workflow(workflow_type.value, payload)
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task(workflow_type.value, total=100)
        async for event in loop.subscribe_progress(run_id, replay=True):
            label = event.message or event.status
            step = event.step_id or workflow_type.value
            progress.update(task, completed=event.percent, description=f"{step}: {label}")

    run = await loop.wait(run_id)
    if run.status is RunStatus.FAILED:
        _fail(run.error, run_id)
    if run.status is RunStatus.CANCELLED:
        console.print(f"[yellow]Run {run_id} was cancelled[/]")
        raise typer.Exit(1)
    if run.degraded:
        console.print(f"[yellow]Partial result; degraded steps: {', '.join(run.degraded)}[/]")
    return run.output


def _print_json(data: Any) -> None:
    console.print_json(json.dumps(data, indent=2, default=str))


# =============================================================================
# Workflow Commands
# =============================================================================


def _print_answer(answer: dict) -> None:
    console.print(
        Panel(
            answer.get("explanation") or "[dim]No explanation[/]",
            title=f"{answer['topic_id']} · {answer['tier']}",
            border_style="cyan",
        )
    )
    console.print(f"Proficiency: [bold]{answer['proficiency']:.2f}[/]")
    diagnosis = answer.get("diagnosis")
    if diagnosis and diagnosis.get("rationale"):
        console.print(f"[dim]{diagnosis['rationale']}[/]")


@app.command()
def ask(
    student: Annotated[str, typer.Argument(help="Student id")],
    question: Annotated[str, typer.Argument(help="Question text")],
    topic: Annotated[str | None, typer.Option("--topic", "-t", help="Topic id")] = None,
) -> None:
    """Explain a question at the student's level."""
    payload = {"student_id": student, "question": question, "topic_id": topic}
    answer = _call(lambda loop: _run_workflow(loop, WorkflowType.ASK_QUESTION, payload))
    _print_answer(answer)


@app.command()
def scan(
    student: Annotated[str, typer.Argument(help="Student id")],
    document: Annotated[Path, typer.Argument(help="Image or document with the question")],
    topic: Annotated[str | None, typer.Option("--topic", "-t", help="Topic id")] = None,
) -> None:
    """Read a question from a scan and explain it."""
    if not document.exists():
        console.print(f"[red]File not found: {document}[/]")
        raise typer.Exit(1)

    payload = {
        "student_id": student,
        "document": base64.b64encode(document.read_bytes()).decode("ascii"),
        "topic_id": topic,
    }
    result = _call(lambda loop: _run_workflow(loop, WorkflowType.SCAN_QUESTION, payload))
    if result["status"] != "answered":
        confidence = result["confidence"]
        console.print(f"[yellow]{result['message']}[/] [dim](confidence {confidence:.0%})[/]")
        raise typer.Exit(1)
    console.print(f"[dim]Read: {result['question']}[/]")
    _print_answer(result)


@app.command()
def challenge(
    student: Annotated[str, typer.Argument(help="Student id")],
    topic: Annotated[
        list[str] | None, typer.Option("--topic", "-t", help="Topic to include (repeatable)")
    ] = None,
    count: Annotated[int | None, typer.Option("--count", "-n", help="Number of items")] = None,
    day: Annotated[str | None, typer.Option("--date", help="Day (YYYY-MM-DD)")] = None,
) -> None:
    """Show (or build) the day's challenge set."""
    payload = {"student_id": student, "topics": topic or [], "count": count, "day": day}
    challenge_set = _call(lambda loop: _run_workflow(loop, WorkflowType.DAILY_CHALLENGE, payload))

    table = Table(title=f"Challenge {challenge_set['date']}")
    table.add_column("#", style="dim", width=3)
    table.add_column("Topic", style="cyan")
    table.add_column("Difficulty", style="yellow")
    table.add_column("Question", style="white")
    for index, item in enumerate(challenge_set["items"]):
        table.add_row(
            str(index), item["topic_id"], item["difficulty"], item["payload"].get("question", "")
        )
    console.print(table)
    if challenge_set["completed"]:
        console.print("[green]Already completed[/]")


@app.command()
def complete(
    student: Annotated[str, typer.Argument(help="Student id")],
    answers: Annotated[list[str], typer.Argument(help="INDEX=1|0 per answered item")],
    day: Annotated[str | None, typer.Option("--date", help="Day (YYYY-MM-DD)")] = None,
) -> None:
    """Record answers for a challenge set."""
    parsed: dict[int, bool] = {}
    for answer in answers:
        index, _, value = answer.partition("=")
        if not index.isdigit() or value not in ("0", "1"):
            console.print(f"[red]Bad answer {answer!r}; expected INDEX=1 or INDEX=0[/]")
            raise typer.Exit(2)
        parsed[int(index)] = value == "1"

    challenge_day = date.fromisoformat(day) if day else utcnow().date()
    scores = _call(lambda loop: loop.complete_challenge(student, challenge_day, parsed))
    _print_scores(scores, title="Updated proficiency")


@app.command()
def plan(
    student: Annotated[str, typer.Argument(help="Student id")],
    exam_date: Annotated[str, typer.Option("--exam-date", help="Exam day (YYYY-MM-DD)")],
    topic: Annotated[
        list[str], typer.Option("--topic", "-t", help="TOPIC=WEIGHT (repeatable)")
    ],
    hours_per_day: Annotated[
        float, typer.Option("--hours-per-day", help="Study hours per day")
    ] = 2.0,
) -> None:
    """Split study time until an exam."""
    topics: dict[str, float] = {}
    for entry in topic:
        name, _, weight = entry.partition("=")
        try:
            topics[name] = float(weight) if weight else 1.0
        except ValueError:
            console.print(f"[red]Bad topic weight {entry!r}[/]")
            raise typer.Exit(2)

    payload = {
        "student_id": student,
        "exam_date": exam_date,
        "topics": topics,
        "hours_per_day": hours_per_day,
    }
    result = _call(lambda loop: _run_workflow(loop, WorkflowType.STUDY_PLAN, payload))

    table = Table(title=f"Study plan · {result['days_until_exam']} days to exam")
    table.add_column("Topic", style="cyan")
    table.add_column("Proficiency", style="yellow", justify="right")
    table.add_column("Hours", style="green", justify="right")
    for topic_id, hours in result["hours"].items():
        table.add_row(topic_id, f"{result['proficiency'][topic_id]:.2f}", f"{hours:.1f}")
    console.print(table)
    if result["review_dates"]:
        console.print(f"Review on: {', '.join(result['review_dates'])}")
    if result["narrative"]:
        console.print(Panel(result["narrative"], border_style="cyan"))


@app.command()
def research(
    student: Annotated[str, typer.Argument(help="Student id")],
    query: Annotated[str, typer.Argument(help="What to look up")],
    topic: Annotated[str | None, typer.Option("--topic", "-t", help="Topic id")] = None,
) -> None:
    """Search sources and summarize them."""
    payload = {"student_id": student, "query": query, "topic_id": topic}
    result = _call(lambda loop: _run_workflow(loop, WorkflowType.RESEARCH, payload))
    console.print(Panel(result["summary"], title=result["query"], border_style="cyan"))
    for index, source in enumerate(result["sources"], start=1):
        console.print(f"{index}. [bold]{source['title']}[/] {source.get('url') or ''}")


@app.command("past-papers")
def past_papers(
    student: Annotated[str, typer.Argument(help="Student id")],
    questions_file: Annotated[Path, typer.Argument(help="Text file, one question per line")],
) -> None:
    """Rank topics by exam frequency and weakness."""
    if not questions_file.exists():
        console.print(f"[red]File not found: {questions_file}[/]")
        raise typer.Exit(1)
    questions = [line.strip() for line in questions_file.read_text().splitlines() if line.strip()]
    payload = {"student_id": student, "questions": questions}
    result = _call(lambda loop: _run_workflow(loop, WorkflowType.PAST_PAPERS, payload))

    table = Table(title=f"Priorities from {result['question_count']} questions")
    table.add_column("Topic", style="cyan")
    table.add_column("Weight", justify="right")
    table.add_column("Proficiency", justify="right", style="yellow")
    table.add_column("Priority", justify="right", style="green")
    for row in result["topics"]:
        table.add_row(
            row["topic_id"],
            f"{row['weight']:.0%}",
            f"{row['score']:.2f}",
            f"{row['priority']:.3f}",
        )
    console.print(table)


# =============================================================================
# Data Commands
# =============================================================================


def _print_scores(scores: dict[str, float], title: str) -> None:
    table = Table(title=title)
    table.add_column("Topic", style="cyan")
    table.add_column("Score", style="green", justify="right")
    for topic_id, score in sorted(scores.items()):
        table.add_row(topic_id, f"{score:.2f}")
    console.print(table)


@app.command()
def proficiency(
    student: Annotated[str, typer.Argument(help="Student id")],
) -> None:
    """Show a student's proficiency per topic."""
    scores = _call(lambda loop: loop.get_proficiency(student))
    if not scores:
        console.print("[dim]No proficiency recorded yet[/]")
        return
    _print_scores(scores, title=f"Proficiency · {student}")


@app.command()
def export(
    student: Annotated[str, typer.Argument(help="Student id")],
    output: Annotated[Path | None, typer.Option("--output", "-o", help="Write to file")] = None,
) -> None:
    """Export every record, challenge set and bookmark of a student."""
    document = _call(lambda loop: loop.export_student_data(student))
    if output is None:
        _print_json(document)
        return
    output.write_text(json.dumps(document, indent=2, default=str), encoding="utf-8")
    console.print(f"[green]Exported to {output}[/]")


@app.command()
def erase(
    student: Annotated[str, typer.Argument(help="Student id")],
    yes: Annotated[bool, typer.Option("--yes", help="Skip confirmation")] = False,
) -> None:
    """Delete all data held for a student."""
    if not yes and not typer.confirm(f"Erase all data for {student}?"):
        raise typer.Exit(1)
    removed = _call(lambda loop: loop.erase_student_data(student))
    console.print(f"[green]Removed {removed} rows[/]")


@app.command()
def sweep() -> None:
    """Delete records not accessed within the retention period."""
    removed = _call(lambda loop: loop.sweep_retention())
    console.print(f"[green]Swept {removed} stale records[/]")


# =============================================================================
# Entry Point
# =============================================================================


@app.callback()
def callback(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Verbose output")] = False,
    database_url: Annotated[
        str | None, typer.Option("--database-url", help="Override the database URL")
    ] = None,
    capability_url: Annotated[
        str | None, typer.Option("--capability-url", help="Override the capability host")
    ] = None,
) -> None:
    """
    StudyLoop - adaptive study orchestration.

    \b
    Configuration comes from STUDYLOOP_* environment variables or .env.
    """
    _overrides.clear()
    _overrides["database_url"] = database_url
    _overrides["capability_base_url"] = capability_url
    configure_logging("DEBUG" if verbose else get_config().log_level)


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
