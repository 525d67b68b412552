from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import click

from longform_tts.config import get_safe_config_report
from longform_tts.errors import SynthesisError
from longform_tts.jobs.models import JobState
from longform_tts.service import SynthesisService
from longform_tts.utils.log import set_log_level


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


def _service() -> SynthesisService:
    return SynthesisService()


@click.group(name="longform-tts", help="longform-tts: long-running speech synthesis jobs")
@click.option("--log-level", default=None, help="Override LOG_LEVEL for this invocation.")
def cli(log_level: str | None) -> None:
    if log_level:
        set_log_level(log_level)


@cli.command()
@click.argument("text_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--title", default=None, help="Job title (defaults to the file name).")
@click.option("--voice", "voice_name", default=None, help="Voice name override.")
@click.option("--language", "language_code", default=None, help="Language code override.")
@click.option("--rate", "speaking_rate", type=float, default=None, help="Speaking rate override.")
@click.option(
    "--input-mode",
    type=click.Choice(["sentences", "bytes"], case_sensitive=False),
    default=None,
)
def synthesize(
    text_file: Path,
    title: str | None,
    voice_name: str | None,
    language_code: str | None,
    speaking_rate: float | None,
    input_mode: str | None,
) -> None:
    """
    Synthesize TEXT_FILE and wait for the job to finish.
    """
    text = text_file.read_text(encoding="utf-8")
    metadata: dict[str, Any] = {
        "title": title or text_file.stem,
        "uploaded_filename": text_file.name,
        "voice": {"name": voice_name, "language_code": language_code, "speaking_rate": speaking_rate},
    }
    if input_mode:
        metadata["input_mode"] = input_mode.lower()

    async def _run() -> dict[str, Any]:
        svc = _service()

        def _progress(rec) -> None:
            click.echo(f"[{rec.progress:5.1f}%] {rec.step}", err=True)

        job_id = await svc.start_job(text, metadata, on_progress=_progress)
        click.echo(f"Job: {job_id}", err=True)
        return await svc.orchestrator.wait(job_id)

    status = asyncio.run(_run())
    _echo_json(status)
    if status.get("state") == JobState.ERROR.value:
        raise SystemExit(2)


@cli.command()
@click.argument("job_id")
def status(job_id: str) -> None:
    """
    Show one job.
    """
    try:
        _echo_json(_service().get_job_status(job_id))
    except SynthesisError as ex:
        raise click.ClickException(str(ex)) from None


@cli.command()
@click.option("--state", default=None, help="Only jobs in this state.")
@click.option("--limit", type=int, default=50, show_default=True)
def jobs(state: str | None, limit: int) -> None:
    """
    List jobs, newest first.
    """
    for item in _service().list_jobs(state=state.upper() if state else None, limit=limit):
        click.echo(
            f"{item['id']}  {item['state']:<12} {item['progress']:5.1f}%  {item['title']}"
        )


@cli.command()
@click.option("--json", "json_flag", is_flag=True, default=False, help="Print JSON.")
def scan(json_flag: bool) -> None:
    """
    List remote artifacts that have no local copy.
    """
    items = asyncio.run(_service().scan_recoverable())
    if json_flag:
        _echo_json(items)
        return
    if not items:
        click.echo("Nothing to recover.")
        return
    for it in items:
        flag = "tracked" if it["already_tracked_locally"] else "untracked"
        click.echo(f"{it['remote_object_name']}  {it['size_bytes']}B  {flag}  {it['book_title']}")


@cli.command()
@click.argument("remote_object_name")
@click.option("--job-id", default=None, help="Job id the artifact belongs to.")
def recover(remote_object_name: str, job_id: str | None) -> None:
    """
    Download REMOTE_OBJECT_NAME and finalize it as a job.
    """
    try:
        result = asyncio.run(_service().recover_item(remote_object_name, job_id=job_id))
    except SynthesisError as ex:
        raise click.ClickException(str(ex)) from None
    click.echo(f"Recovered: {result['local_path']} (job {result['job_id']}, {result['state']})")


@cli.command()
@click.argument("job_id")
def cleanup(job_id: str) -> None:
    """
    Retry the remote cleanup of a completed job.
    """
    try:
        _echo_json(asyncio.run(_service().retry_cleanup(job_id)))
    except SynthesisError as ex:
        raise click.ClickException(str(ex)) from None


@cli.command()
@click.option("--days", type=int, default=None, help="Retention window (default JOB_RETENTION_DAYS).")
def prune(days: int | None) -> None:
    """
    Remove terminal job records older than the retention window.
    """
    removed = _service().prune_stale(days)
    click.echo(f"Pruned {removed} job record(s).")


@cli.command(name="config")
def config_cmd() -> None:
    """
    Print the effective configuration (secrets shown only as SET/UNSET).
    """
    _echo_json(get_safe_config_report())


@cli.command()
def serve() -> None:
    """
    Run the HTTP API (uvicorn).
    """
    from longform_tts.web.run import main

    main()


def main() -> None:
    cli()


if __name__ == "__main__":  # pragma: no cover
    main()
