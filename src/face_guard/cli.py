from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable, NoReturn, Optional

import typer

from .cli_helpers import (
    build_log_writer,
    capture_face,
    format_event,
    print_identities,
    print_summary,
    report_persistence_warnings,
    require_extractor,
)
from .errors import IndexOutOfRange, NotFound
from .event_analytics import summarize_events
from .event_log import EventLog
from .face_embedder import InsightFaceExtractor
from .face_types import FrameReport
from .identity_config import IdentityConfig
from .profile_store import ProfileStore
from .recognition_pipeline import RecognitionPipeline
from .settings_store import ThresholdStore

app = typer.Typer(add_completion=False, help="Face enrollment and live recognition.")

STORE_OPTION = typer.Option(
    Path("profiles/face_profiles.json"), "--store", help="Profile store path."
)
SETTINGS_OPTION = typer.Option(
    Path("profiles/settings.json"), "--settings", help="Settings store path."
)


def _build_extractor(
    verbose: bool = False, log_fn: Optional[Callable[[str], None]] = None
) -> InsightFaceExtractor:
    return InsightFaceExtractor(verbose=verbose, log_fn=log_fn)


def _fail(message: str) -> NoReturn:
    typer.secho(message, fg=typer.colors.YELLOW)
    raise typer.Exit(code=1)


@app.command()
def enroll(
    name: str = typer.Argument(..., help="Display name of the new identity."),
    source: str = typer.Argument(..., help="Image, video file or camera index."),
    store_path: Path = STORE_OPTION,
) -> None:
    store = ProfileStore(store_path)
    extractor = _build_extractor()
    require_extractor(extractor)
    face, thumbnail = capture_face(extractor, source)
    if face is None:
        _fail("No face found with enough confidence; nothing enrolled.")
    try:
        with report_persistence_warnings():
            identity = store.enroll(name, thumbnail, face.vector)
    except ValueError as exc:
        _fail(f"Enrollment rejected: {exc}")
    typer.secho(f"Enrolled {identity.name} as {identity.id}", fg=typer.colors.GREEN)


@app.command("add-sample")
def add_sample(
    identity_id: str = typer.Argument(..., help="Identity to train."),
    source: str = typer.Argument(..., help="Image, video file or camera index."),
    check: bool = typer.Option(
        True,
        "--check/--no-check",
        help="Reject samples that are far from every existing sample.",
    ),
    tolerance: Optional[float] = typer.Option(
        None, "--tolerance", help="Maximum distance for the consistency check."
    ),
    store_path: Path = STORE_OPTION,
) -> None:
    store = ProfileStore(store_path)
    if not store.has_identity(identity_id):
        _fail(f"Identity {identity_id} not found")
    extractor = _build_extractor()
    require_extractor(extractor)
    face, thumbnail = capture_face(extractor, source)
    if face is None:
        _fail("No face found with enough confidence; sample not added.")
    try:
        if check and not store.sample_consistency(identity_id, face.vector, tolerance):
            _fail("Sample rejected: it does not resemble the existing samples.")
        with report_persistence_warnings():
            identity = store.add_sample(identity_id, thumbnail, face.vector)
    except ValueError as exc:
        _fail(f"Sample rejected: {exc}")
    typer.secho(
        f"Added sample to {identity.name}: samples={identity.sample_count}",
        fg=typer.colors.GREEN,
    )


@app.command("remove-sample")
def remove_sample(
    identity_id: str = typer.Argument(..., help="Identity owning the sample."),
    index: int = typer.Argument(..., help="Zero-based sample position."),
    store_path: Path = STORE_OPTION,
) -> None:
    store = ProfileStore(store_path)
    try:
        with report_persistence_warnings():
            identity = store.remove_sample(identity_id, index)
    except NotFound as exc:
        _fail(str(exc))
    except IndexOutOfRange as exc:
        _fail(str(exc))
    typer.secho(
        f"Removed sample {index} from {identity.name}: samples={identity.sample_count}",
        fg=typer.colors.GREEN,
    )


@app.command()
def delete(
    identity_id: str = typer.Argument(..., help="Identity to delete."),
    store_path: Path = STORE_OPTION,
) -> None:
    store = ProfileStore(store_path)
    with report_persistence_warnings():
        deleted = store.delete(identity_id)
    if deleted:
        typer.secho(f"Deleted {identity_id}", fg=typer.colors.GREEN)
    else:
        typer.secho(f"Identity {identity_id} not found", fg=typer.colors.YELLOW)


@app.command()
def rename(
    identity_id: str = typer.Argument(..., help="Identity to rename."),
    name: str = typer.Argument(..., help="New display name."),
    store_path: Path = STORE_OPTION,
) -> None:
    store = ProfileStore(store_path)
    try:
        with report_persistence_warnings():
            identity = store.rename(identity_id, name)
    except NotFound as exc:
        _fail(str(exc))
    typer.secho(f"Renamed {identity.id} to {identity.name}", fg=typer.colors.GREEN)


@app.command("list")
def list_identities(store_path: Path = STORE_OPTION) -> None:
    store = ProfileStore(store_path)
    print_identities(store.list_identities())


@app.command()
def threshold(
    value: Optional[float] = typer.Argument(
        None, help="New acceptance threshold; omit to show the current one."
    ),
    settings_path: Path = SETTINGS_OPTION,
) -> None:
    settings = ThresholdStore(settings_path)
    if value is None:
        typer.echo(f"{settings.threshold:.2f}")
        return
    with report_persistence_warnings():
        applied = settings.set_threshold(value)
    if applied != value:
        config = IdentityConfig()
        typer.secho(
            f"Threshold clamped to [{config.threshold_min:.2f}, {config.threshold_max:.2f}]",
            fg=typer.colors.YELLOW,
        )
    typer.secho(f"Threshold set to {applied:.2f}", fg=typer.colors.GREEN)


@app.command()
def monitor(
    source: str = typer.Argument("0", help="Video file or camera index."),
    store_path: Path = STORE_OPTION,
    settings_path: Path = SETTINGS_OPTION,
    limit_frames: Optional[int] = typer.Option(
        None, "--limit-frames", help="Stop after N frames for quick checks."
    ),
    verbose: bool = typer.Option(
        False, "--verbose/--quiet", help="Write per-frame processing logs."
    ),
    tee_logs: bool = typer.Option(
        False,
        "--tee-logs/--no-tee-logs",
        help="Also mirror verbose frame logs to stdout while writing logs/<source>.log.",
    ),
    events_output: Optional[Path] = typer.Option(
        None, "--events-output", help="Write the event archive as JSON on exit."
    ),
) -> None:
    store = ProfileStore(store_path)
    settings = ThresholdStore(settings_path)
    log_fn, log_handle = build_log_writer(source, verbose, tee_logs)
    try:
        extractor = _build_extractor(verbose=verbose, log_fn=log_fn)
        require_extractor(extractor)

        def _on_report(report: FrameReport) -> None:
            for event in report.events:
                typer.secho(format_event(event), fg=typer.colors.CYAN)

        pipeline = RecognitionPipeline(
            extractor=extractor,
            store=store,
            settings=settings,
            event_log=EventLog(),
            on_report=_on_report,
            verbose=verbose,
            log_fn=log_fn,
        )
        try:
            asyncio.run(pipeline.run(source, limit_frames=limit_frames))
        except KeyboardInterrupt:
            pipeline.stop()
            typer.secho("Stopped.", fg=typer.colors.BLUE)
        typer.secho(
            f"Frames processed={pipeline.frames_processed} "
            f"dropped={pipeline.dropped_frames} failed={pipeline.failed_frames} "
            f"fps={pipeline.fps}",
            fg=typer.colors.BLUE,
        )
        print_summary(summarize_events(pipeline.event_log.events))
        if events_output is not None:
            path = pipeline.event_log.export_json(events_output)
            typer.secho(f"Events written to {path}", fg=typer.colors.GREEN)
    finally:
        if log_handle is not None:
            log_handle.close()


def run() -> None:
    app()


if __name__ == "__main__":
    run()
