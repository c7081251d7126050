from __future__ import annotations

import base64
import warnings
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional, TextIO, Tuple

import cv2
import numpy as np
import typer
from rich.console import Console
from rich.table import Table

from .errors import PersistenceWarning
from .event_analytics import LogSummary
from .face_embedder import FaceExtractor
from .face_types import DetectedFace, Identity, RecognitionEvent

console = Console()


def default_log_path(source: str) -> Path:
    src = Path(source)
    stem = src.stem if src.suffix else src.name
    return Path("logs") / f"{stem}.log"


def build_log_writer(
    source: str,
    verbose: bool,
    tee_logs: bool,
) -> tuple[Optional[Callable[[str], None]], Optional[TextIO]]:
    if not verbose:
        return None, None
    log_path = default_log_path(source)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    log_handle = log_path.open("w", encoding="utf-8")
    typer.secho(f"Verbose logs written to {log_path}", fg=typer.colors.BLUE)

    def _file_only(message: str) -> None:
        log_handle.write(f"{message}\n")

    def _tee(message: str) -> None:
        log_handle.write(f"{message}\n")
        print(message)

    return (_tee if tee_logs else _file_only), log_handle


def read_source_frame(source: str, warmup_frames: int = 5) -> np.ndarray:
    """Load a still image, or grab a frame from a video file or camera index."""
    path = Path(source)
    if path.is_file():
        image = cv2.imread(str(path))
        if image is not None:
            return image
    cap = cv2.VideoCapture(int(source) if source.isdigit() else source)
    if not cap.isOpened():
        raise RuntimeError(f"Unable to open video source {source}")
    frame = None
    try:
        # Cameras often deliver dark frames until exposure settles.
        for _ in range(max(1, warmup_frames)):
            ok, grabbed = cap.read()
            if not ok:
                break
            frame = grabbed
    finally:
        cap.release()
    if frame is None:
        raise RuntimeError(f"No frame could be read from {source}")
    return frame


def make_thumbnail(frame: np.ndarray, width: int = 320) -> str:
    height = max(1, int(round(frame.shape[0] * width / max(1, frame.shape[1]))))
    resized = cv2.resize(frame, (width, height))
    ok, buffer = cv2.imencode(".jpg", resized, [int(cv2.IMWRITE_JPEG_QUALITY), 80])
    if not ok:
        raise RuntimeError("Unable to encode thumbnail")
    encoded = base64.b64encode(buffer.tobytes()).decode("ascii")
    return f"data:image/jpeg;base64,{encoded}"


def capture_face(
    extractor: FaceExtractor, source: str
) -> Tuple[Optional[DetectedFace], str]:
    frame = read_source_frame(source)
    face = extractor.extract(frame, "strict")
    return face, make_thumbnail(frame)


def require_extractor(extractor: FaceExtractor) -> None:
    if extractor.initialize():
        return
    typer.secho(
        "Face models could not be loaded; retry once they are reachable.",
        fg=typer.colors.RED,
    )
    raise typer.Exit(code=1)


def print_identities(identities: Iterable[Identity]) -> None:
    table = Table(title="Enrolled identities")
    table.add_column("id")
    table.add_column("name")
    table.add_column("samples", justify="right")
    for identity in identities:
        table.add_row(identity.id, identity.name, str(identity.sample_count))
    console.print(table)


def format_event(event: RecognitionEvent) -> str:
    fields = [
        f"name={event.identity_name}",
        f"unknown={event.is_unknown}",
        f"confidence={event.confidence}",
    ]
    if event.age is not None:
        fields.append(f"age={event.age}")
    if event.gender:
        fields.append(f"gender={event.gender}")
    return " ".join(fields)


def print_summary(summary: LogSummary) -> None:
    table = Table(title="Recognition summary")
    table.add_column("metric")
    table.add_column("value", justify="right")
    table.add_row("events", str(summary.total))
    table.add_row("identified", str(summary.identified))
    table.add_row("unknown", str(summary.unknown))
    average_age = "-" if summary.average_age is None else f"{summary.average_age:.1f}"
    table.add_row("average age", average_age)
    for gender, count in sorted(summary.gender_counts.items()):
        table.add_row(f"gender {gender}", str(count))
    for group, count in summary.age_groups.items():
        table.add_row(f"age {group}", str(count))
    for name, count in summary.top_identities:
        table.add_row(f"seen {name}", str(count))
    console.print(table)


@contextmanager
def report_persistence_warnings() -> Iterator[None]:
    """Show failed saves as CLI warnings; the command itself still succeeds."""
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", PersistenceWarning)
        yield
    for item in caught:
        if issubclass(item.category, PersistenceWarning):
            typer.secho(f"Warning: {item.message}", fg=typer.colors.YELLOW)
        else:
            warnings.showwarning(item.message, item.category, item.filename, item.lineno)
