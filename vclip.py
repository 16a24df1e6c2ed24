#!/usr/bin/env python3

import argparse
import enum
import logging
import os
import re
import secrets
import shlex
import shutil
import stat
import string
import subprocess
import sys
import tempfile
from typing import (
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
    TypedDict,
    cast,
)

FFMPEG_BIN = "ffmpeg"
VIDEO_PARAMS = [
    "-f",
    "mp4",
    "-c:v",
    "libx264",
    "-s",
    "1280x720",
    "-b:v",
    "463k",
    "-r",
    "ntsc",
    "-aspect",
    "16:9",
    "-map_metadata",
    "-1",
    "-map",
    "0:0",
    "-threads",
    "5",
    "-y",
]
IMAGE_PARAMS = ["-frames:v", "1", "-q:v", "2", "-y"]
PROBE_DURATION = "00:00:01"
PASSLOG_NAME = "ffmpeg2pass"

SEQUENCE_WIDTH = 4
SEQUENCE_LIMIT = 9999
IMAGE_EXT = "jpg"
FALLBACK_NAME_LENGTH = 32
_FALLBACK_ALPHABET = string.ascii_letters + string.digits

USAGE_ERROR_EXIT = 2
INTERNAL_ERROR_EXIT = 3

STAGE_SOURCE = "source"
STAGE_DIRECTORY = "directory"
STAGE_OPTION = "option"
STAGE_NAMING = "naming"
STAGE_IMAGE = "image"
STAGE_VIDEO = "video"
STAGE_CLEANUP = "cleanup"

VERBOSE_LEVEL = 0


class VclipError(Exception):
    pass


class FormatError(VclipError):
    pass


class SourceRejected(VclipError):
    def __init__(self, source: str, reason: str) -> None:
        self.source = source
        self.reason = reason
        super().__init__(f"{reason}: {source}")


class DirectoryError(VclipError):
    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"{reason}: {path}")


class SequenceExhausted(VclipError):
    def __init__(self, template: str, last_tried: str) -> None:
        self.template = template
        self.last_tried = last_tried
        super().__init__(
            f"no free sequence number up to {SEQUENCE_LIMIT:0{SEQUENCE_WIDTH}d} "
            f"for {template!r} (last tried {last_tried!r})"
        )


class EncodeFailure(VclipError):
    def __init__(
        self, cmd: Sequence[str], returncode: Optional[int], stderr: str = ""
    ) -> None:
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = stderr
        tail = _stderr_tail(stderr)
        if returncode is None:
            message = f"{cmd[0] if cmd else 'encoder'} could not be started"
        else:
            message = f"{cmd[0] if cmd else 'encoder'} exited with status {returncode}"
        if tail:
            message = f"{message}: {tail}"
        super().__init__(message)


class InternalInvariantError(VclipError):
    pass


def _stderr_tail(text: str, lines: int = 3) -> str:
    kept = [ln.strip() for ln in (text or "").splitlines() if ln.strip()]
    return " | ".join(kept[-lines:])


class DirectoryContext(TypedDict, total=False):
    source_dir: str
    output_dir: str
    name_prefix: str


class ImageRequest(TypedDict):
    time_reference: str
    output: str


class _JobRequired(TypedDict):
    index: int
    source: str
    suppress_video: bool
    images: List[ImageRequest]
    context: DirectoryContext
    warnings: List[str]


class Job(_JobRequired, total=False):
    output: str
    start: str
    duration: str


class ErrorEntry(TypedDict):
    job_index: Optional[int]
    stage: str
    source: Optional[str]
    output: Optional[str]
    detail: str


_TIME_REFERENCE_RE = re.compile(r"[0-9]{2}:[0-9]{2}:[0-9]{2}(?:\.[0-9]{1,2})?")


def is_time_reference(value: str) -> bool:
    return isinstance(value, str) and _TIME_REFERENCE_RE.fullmatch(value) is not None


def check_time_reference(value: str) -> str:
    # Syntax only: 99:99:99 passes, ffmpeg judges it against the source.
    if not is_time_reference(value):
        raise FormatError(
            f"not a valid time reference (HH:MM:SS, HH:MM:SS.f or HH:MM:SS.ff): {value!r}"
        )
    return value


_COMMENT_RE = re.compile(r"(?<!\\)#.*$")


def tokenize_config(text: str) -> List[str]:
    tokens: List[str] = []
    for line in text.splitlines():
        line = _COMMENT_RE.sub("", line).replace("\\#", "#")
        if not line.strip():
            continue
        tokens.extend(line.split())
    return tokens


def check_command_line(tokens: Sequence[str]) -> List[str]:
    for token in tokens:
        if "\n" in token or "\r" in token:
            raise FormatError(
                f"new lines are not allowed in command-line options: {token!r}"
            )
    return list(tokens)


def load_config(path: str) -> List[str]:
    if not os.path.isfile(path) or not os.access(path, os.R_OK):
        raise FormatError(f"not a readable configuration file: {path}")
    try:
        with open(path, "r", encoding="utf-8") as fh:
            text = fh.read()
    except (OSError, UnicodeDecodeError) as exc:
        raise FormatError(f"cannot read configuration file {path}: {exc}") from exc
    tokens = tokenize_config(text)
    if not tokens:
        raise FormatError(f"configuration file has no options: {path}")
    return tokens


class OptionKind(enum.Enum):
    CONFIG_FILE = "config-file"
    SOURCE_DIR = "source-dir"
    OUTPUT_DIR = "output-dir"
    NAME_PREFIX = "name-prefix"
    VIDEO = "video"
    IMAGE = "image"
    ONLY_IMAGE = "only-image"
    START_POSITION = "start-position"
    DURATION = "duration"


OPTION_TOKENS: Dict[str, OptionKind] = {
    "-c": OptionKind.CONFIG_FILE,
    "--config": OptionKind.CONFIG_FILE,
    "--config-file": OptionKind.CONFIG_FILE,
    "--source-dir": OptionKind.SOURCE_DIR,
    "--output-dir": OptionKind.OUTPUT_DIR,
    "--base-name": OptionKind.NAME_PREFIX,
    "--name-prefix": OptionKind.NAME_PREFIX,
    "-v": OptionKind.VIDEO,
    "--video": OptionKind.VIDEO,
    "-i": OptionKind.IMAGE,
    "--image": OptionKind.IMAGE,
    "-oi": OptionKind.ONLY_IMAGE,
    "--only-image": OptionKind.ONLY_IMAGE,
    "-ss": OptionKind.START_POSITION,
    "--start-position": OptionKind.START_POSITION,
    "-t": OptionKind.DURATION,
    "--duration": OptionKind.DURATION,
}


def split_config_option(tokens: Sequence[str]) -> Tuple[Optional[str], List[str]]:
    kinds = [OPTION_TOKENS.get(token) for token in tokens]
    if OptionKind.CONFIG_FILE not in kinds:
        return None, list(tokens)
    others = [
        token
        for token, kind in zip(tokens, kinds)
        if kind is not None and kind is not OptionKind.CONFIG_FILE
    ]
    if others or kinds.count(OptionKind.CONFIG_FILE) > 1:
        raise FormatError(
            "--config cannot be combined with other options or repeated"
        )
    if kinds[0] is not OptionKind.CONFIG_FILE:
        raise FormatError(f"unexpected arguments before --config: {tokens[0]!r}")
    values = list(tokens[1:])
    if not values:
        raise FormatError("--config requires a path")
    return " ".join(values), []


_SEPARATORS_RE = re.compile(r"/{2,}")
_PUNCTUATION_RE = re.compile("[" + re.escape(string.punctuation) + "]")


def collapse_separators(path: str) -> str:
    return _SEPARATORS_RE.sub("/", path)


def as_directory(path: str) -> str:
    return collapse_separators(path).rstrip("/") + "/"


def strip_directory(path: str) -> str:
    return path.rstrip("/") or "/"


def split_source_name(source: str) -> Tuple[str, Optional[str]]:
    name = os.path.basename(source.rstrip("/"))
    stem, dot, ext = name.rpartition(".")
    if dot and stem and ext:
        return stem, ext
    return name, None


def _print_command(cmd: Sequence[str]) -> None:
    if not VERBOSE_LEVEL:
        return
    cmdline = " ".join(shlex.quote(str(part)) for part in cmd)
    print("+ " + cmdline, file=sys.stderr)


class NamingState:
    # Shared by every allocation of one run; never moves backwards.

    def __init__(self, start: int = 0) -> None:
        self.next_sequence = start

    def advance(self, used: int) -> None:
        if used < self.next_sequence:
            raise InternalInvariantError(
                f"sequence would move backwards: {used} < {self.next_sequence}"
            )
        self.next_sequence = used


def _random_name(length: int = FALLBACK_NAME_LENGTH) -> str:
    return "".join(secrets.choice(_FALLBACK_ALPHABET) for _ in range(length))


class NameAllocator:
    # A candidate is reserved by creating it exclusively and removing it
    # again. Reserved names are remembered for the rest of the run.

    def __init__(self, state: Optional[NamingState] = None) -> None:
        self.state = state if state is not None else NamingState()
        self._taken: set[str] = set()

    def is_taken(self, path: str) -> bool:
        return os.path.lexists(path) or os.path.abspath(path) in self._taken

    def _reserve(self, path: str) -> bool:
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except OSError as exc:
            logging.debug("cannot reserve %s: %s", path, exc)
            return False
        os.close(fd)
        try:
            os.remove(path)
        except OSError as exc:
            logging.warning("reserved name left on disk: %s: %s", path, exc)
        self._taken.add(os.path.abspath(path))
        return True

    @staticmethod
    def template(
        source: str, output_dir: Optional[str] = None, prefix: Optional[str] = None
    ) -> str:
        base, _ = split_source_name(source)
        name = f"{prefix} {base}" if prefix else base
        return os.path.join(output_dir or "", name)

    def _probe(self, build: Callable[[int], str], template: str) -> Tuple[int, str]:
        seq = self.state.next_sequence
        candidate = build(seq)
        while self.is_taken(candidate):
            logging.info("output name exists: %s", candidate)
            if seq >= SEQUENCE_LIMIT:
                raise SequenceExhausted(template, candidate)
            seq += 1
            candidate = build(seq)
        return seq, candidate

    def allocate_video(
        self,
        source: str,
        output_dir: Optional[str] = None,
        prefix: Optional[str] = None,
    ) -> str:
        template = self.template(source, output_dir, prefix)
        _, ext = split_source_name(source)

        def build(seq: int) -> str:
            name = f"{template} {seq:0{SEQUENCE_WIDTH}d}"
            return f"{name}.{ext}" if ext else name

        seq, candidate = self._probe(build, template)
        if not self._reserve(candidate):
            raise DirectoryError(
                os.path.dirname(candidate) or os.curdir,
                f"cannot create {os.path.basename(candidate)!r} in directory",
            )
        self.state.advance(seq)
        return candidate

    def allocate_image(
        self,
        source: str,
        time_reference: str,
        output_dir: Optional[str] = None,
        prefix: Optional[str] = None,
    ) -> str:
        template = self.template(source, output_dir, prefix)
        stamp = time_reference.replace(":", ".")

        def build(seq: int) -> str:
            return f"{template} {seq:0{SEQUENCE_WIDTH}d} {stamp}.{IMAGE_EXT}"

        try:
            seq, candidate = self._probe(build, template)
        except SequenceExhausted as exc:
            return self._allocate_fallback(output_dir, exc)
        if not self._reserve(candidate):
            return self._allocate_fallback(
                output_dir,
                DirectoryError(
                    os.path.dirname(candidate) or os.curdir,
                    f"cannot create {os.path.basename(candidate)!r} in directory",
                ),
            )
        self.state.advance(seq)
        return candidate

    def _allocate_fallback(self, output_dir: Optional[str], cause: VclipError) -> str:
        candidate = os.path.join(output_dir or "", f"{_random_name()}.{IMAGE_EXT}")
        if self.is_taken(candidate) or not self._reserve(candidate):
            logging.debug("fallback image name unusable: %s", candidate)
            raise cause
        logging.warning("%s; using fallback image name %s", cause, candidate)
        return candidate


class ErrorLog:
    # Append-only; mirrored to a transient file while open.

    def __init__(self) -> None:
        self.entries: List[ErrorEntry] = []
        self.path: Optional[str] = None

    def open(self) -> "ErrorLog":
        if self.path is None:
            fd, self.path = tempfile.mkstemp(prefix="vclip-errors-", suffix=".log")
            os.close(fd)
        return self

    def close(self) -> None:
        if self.path is None:
            return
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass
        self.path = None

    def __enter__(self) -> "ErrorLog":
        return self.open()

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __len__(self) -> int:
        return len(self.entries)

    def record(
        self,
        stage: str,
        detail: str,
        job_index: Optional[int] = None,
        source: Optional[str] = None,
        output: Optional[str] = None,
    ) -> ErrorEntry:
        entry: ErrorEntry = {
            "job_index": job_index,
            "stage": stage,
            "source": source,
            "output": output,
            "detail": detail,
        }
        self.entries.append(entry)
        if self.path is not None:
            with open(self.path, "a", encoding="utf-8") as fh:
                fh.write(format_error_entry(entry))
        return entry

    def render(self) -> str:
        if self.path is not None and os.path.exists(self.path):
            with open(self.path, "r", encoding="utf-8") as fh:
                return fh.read()
        return "".join(format_error_entry(entry) for entry in self.entries)


def format_error_entry(entry: ErrorEntry) -> str:
    job = "-" if entry["job_index"] is None else str(entry["job_index"])
    lines = [f"ERROR: stage: {entry['stage']}: job: {job}"]
    if entry["source"]:
        lines.append(f"  source: {entry['source']!r}")
    if entry["output"]:
        lines.append(f"  output: {entry['output']!r}")
    lines.append(f"  detail: {entry['detail']}")
    return "\n".join(lines) + "\n"


class FFmpegEncoder:
    def __init__(
        self,
        binary: str = FFMPEG_BIN,
        video_params: Optional[Sequence[str]] = None,
        image_params: Optional[Sequence[str]] = None,
        verbose: int = 0,
    ) -> None:
        self.binary = binary
        self.video_params = list(VIDEO_PARAMS if video_params is None else video_params)
        self.image_params = list(IMAGE_PARAMS if image_params is None else image_params)
        self.verbose = verbose

    def _base(self) -> List[str]:
        cmd = [self.binary, "-hide_banner", "-nostdin"]
        cmd += ["-loglevel", "info" if self.verbose > 1 else "error"]
        return cmd

    def _run(self, cmd: List[str], cwd: Optional[str] = None) -> None:
        _print_command(cmd)
        try:
            proc = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=cwd,
            )
        except OSError as exc:
            raise EncodeFailure(cmd, None, str(exc)) from exc
        if proc.returncode != 0:
            stderr = (proc.stderr or b"").decode("utf-8", "replace")
            raise EncodeFailure(cmd, proc.returncode, stderr)

    def supports(self, source: str) -> bool:
        cmd = self._base()
        cmd += ["-t", PROBE_DURATION, "-i", source]
        cmd += self.video_params
        cmd += [os.devnull]
        try:
            self._run(cmd)
        except EncodeFailure as exc:
            logging.debug("support probe failed for %s: %s", source, exc)
            return False
        return True

    def extract_image(self, source: str, time_reference: str, output: str) -> None:
        cmd = self._base()
        cmd += ["-ss", time_reference, "-i", source]
        cmd += self.image_params
        cmd += [output]
        self._run(cmd)

    def encode_video(
        self,
        source: str,
        output: str,
        start: Optional[str],
        duration: Optional[str],
        workdir: str,
    ) -> None:
        trim: List[str] = []
        if start:
            trim += ["-ss", start]
        if duration:
            trim += ["-t", duration]
        src = os.path.abspath(source)
        out = os.path.abspath(output)
        passlog = os.path.join(workdir, PASSLOG_NAME)
        first = self._base() + trim + ["-i", src] + self.video_params
        first += ["-pass", "1", "-passlogfile", passlog, os.devnull]
        second = self._base() + trim + ["-i", src] + self.video_params
        second += ["-pass", "2", "-passlogfile", passlog, out]
        self._run(first, cwd=workdir)
        self._run(second, cwd=workdir)


_DIRECTORY_KEYS = {
    OptionKind.SOURCE_DIR: "source_dir",
    OptionKind.OUTPUT_DIR: "output_dir",
    OptionKind.NAME_PREFIX: "name_prefix",
}


class JobModelBuilder:
    # Values accumulate under the most recent option and are applied when
    # the next option arrives or the input ends. A video option commits
    # the job opened by the previous one.

    def __init__(
        self,
        encoder: FFmpegEncoder,
        allocator: Optional[NameAllocator] = None,
        errors: Optional[ErrorLog] = None,
    ) -> None:
        self.encoder = encoder
        self.allocator = allocator if allocator is not None else NameAllocator()
        self.errors = errors if errors is not None else ErrorLog()
        self.jobs: List[Job] = []
        self.created_dirs: List[str] = []
        self._option: Optional[OptionKind] = None
        self._values: List[str] = []
        self._pending: DirectoryContext = {}
        self._last_known: DirectoryContext = {}
        self._job: Optional[Job] = None
        self._timestamps: List[str] = []
        self._next_index = 0
        self._handlers: Dict[OptionKind, Callable[[List[str]], None]] = {
            OptionKind.CONFIG_FILE: self._apply_config_file,
            OptionKind.SOURCE_DIR: self._apply_source_dir,
            OptionKind.OUTPUT_DIR: self._apply_output_dir,
            OptionKind.NAME_PREFIX: self._apply_name_prefix,
            OptionKind.VIDEO: self._open_job,
            OptionKind.IMAGE: self._apply_image,
            OptionKind.ONLY_IMAGE: self._apply_only_image,
            OptionKind.START_POSITION: self._apply_start_position,
            OptionKind.DURATION: self._apply_duration,
        }

    def build(self, tokens: Iterable[str]) -> List[Job]:
        for token in tokens:
            self.feed(token)
        return self.finish()

    def feed(self, token: str) -> None:
        kind = OPTION_TOKENS.get(token)
        if kind is None:
            if self._option is None:
                self._report(STAGE_OPTION, f"argument without an option: ignoring {token!r}")
                return
            self._values.append(token)
            return
        self._flush()
        if kind is OptionKind.VIDEO:
            self._commit()
        self._option = kind
        self._values = []

    def finish(self) -> List[Job]:
        self._flush()
        self._commit()
        return self.jobs

    def _flush(self) -> None:
        kind, values = self._option, self._values
        self._option, self._values = None, []
        if kind is None:
            return
        handler = self._handlers.get(kind)
        if handler is None:
            raise InternalInvariantError(f"no handler for option {kind!r}")
        handler(values)

    def _report(
        self,
        stage: str,
        message: str,
        source: Optional[str] = None,
        output: Optional[str] = None,
    ) -> None:
        logging.warning("%s", message)
        self.errors.record(stage, message, source=source, output=output)

    def _job_warning(self, job: Job, stage: str, message: str) -> None:
        job["warnings"].append(message)
        logging.warning("job %d: %s", job["index"], message)
        self.errors.record(stage, message, job_index=job["index"], source=job["source"])

    def _apply_config_file(self, values: List[str]) -> None:
        self._report(
            STAGE_OPTION,
            f"config-file: do not reference a configuration file from "
            f"another one: ignoring {' '.join(values)!r}",
        )

    def _set_pending(self, key: str, value: str, option: str) -> None:
        previous = self._pending.get(key)
        if previous is not None:
            logging.warning(
                "%s: declared more than once before the next video: %r replaces %r",
                option,
                value,
                previous,
            )
        cast(Dict[str, str], self._pending)[key] = value

    def _apply_source_dir(self, values: List[str]) -> None:
        option = OptionKind.SOURCE_DIR.value
        if not values:
            self._report(STAGE_OPTION, f"{option}: no directory given")
            return
        path = as_directory(" ".join(values))
        bare = strip_directory(path)
        if not os.path.isdir(bare) or not os.access(bare, os.R_OK | os.X_OK):
            exc = DirectoryError(bare, "not a readable directory")
            self._report(STAGE_DIRECTORY, f"{option}: ignoring: {exc}")
            return
        self._set_pending("source_dir", path, option)

    def _prepare_output_dir(self, bare: str) -> None:
        if os.path.isdir(bare):
            if not os.access(bare, os.W_OK):
                try:
                    mode = os.stat(bare).st_mode
                    os.chmod(bare, mode | stat.S_IWUSR)
                except OSError as exc:
                    raise DirectoryError(bare, f"cannot make writable ({exc})") from exc
                logging.warning("output-dir: made writable: %s", bare)
        elif os.path.lexists(bare):
            raise DirectoryError(bare, "not a directory")
        else:
            try:
                os.mkdir(bare)
            except OSError as exc:
                raise DirectoryError(bare, f"cannot create directory ({exc})") from exc
            self.created_dirs.append(bare)
            logging.info("output-dir: created directory: %s", bare)
        if not os.access(bare, os.W_OK | os.X_OK):
            raise DirectoryError(bare, "not a writable directory")

    def _apply_output_dir(self, values: List[str]) -> None:
        option = OptionKind.OUTPUT_DIR.value
        if not values:
            self._report(STAGE_OPTION, f"{option}: no directory given")
            return
        path = as_directory(" ".join(values))
        try:
            self._prepare_output_dir(strip_directory(path))
        except DirectoryError as exc:
            self._report(STAGE_DIRECTORY, f"{option}: ignoring: {exc}")
            return
        self._set_pending("output_dir", path, option)

    def _apply_name_prefix(self, values: List[str]) -> None:
        option = OptionKind.NAME_PREFIX.value
        prefix = _PUNCTUATION_RE.sub("", " ".join(values)).strip()
        if not prefix:
            self._report(STAGE_OPTION, f"{option}: empty name prefix: ignoring {values!r}")
            return
        self._set_pending("name_prefix", prefix, option)

    def _resolve_context(self) -> DirectoryContext:
        context: DirectoryContext = {}
        for key in _DIRECTORY_KEYS.values():
            value = self._pending.get(key, self._last_known.get(key))
            if value is not None:
                cast(Dict[str, str], context)[key] = value
        return context

    def _check_source(self, source: str) -> None:
        if not os.path.isfile(source) or not os.access(source, os.R_OK):
            raise SourceRejected(source, "not a readable video source")
        if os.path.getsize(source) <= 0:
            raise SourceRejected(source, "size is not greater than zero")
        if not self.encoder.supports(source):
            raise SourceRejected(source, "video will not be encoded (format not supported)")

    def _open_job(self, values: List[str]) -> None:
        if self._job is not None:
            raise InternalInvariantError(
                f"job {self._job['index']} still open when a new video is declared"
            )
        if not values:
            self._report(STAGE_OPTION, "video: no source file given")
            return
        name = collapse_separators(" ".join(values)).rstrip("/")
        context = self._resolve_context()
        source = collapse_separators(context.get("source_dir", "") + name)
        try:
            self._check_source(source)
        except SourceRejected as exc:
            self._report(STAGE_SOURCE, f"video: ignoring: {exc}", source=source)
            return
        job: Job = {
            "index": self._next_index,
            "source": source,
            "suppress_video": False,
            "images": [],
            "context": context,
            "warnings": [],
        }
        self._next_index += 1
        self._last_known = cast(DirectoryContext, dict(context))
        self._pending = {}
        self._job = job
        self._timestamps = []
        logging.info("job %d: source video: %s", job["index"], source)

    def _current_job(self, option: str, values: List[str]) -> Optional[Job]:
        if self._job is None:
            self._report(
                STAGE_OPTION,
                f"{option}: no source video declared before it: ignoring {values!r}",
            )
        return self._job

    def _attach_images(self, option: str, values: List[str]) -> None:
        job = self._current_job(option, values)
        if job is None:
            return
        if option == OptionKind.ONLY_IMAGE.value and not job["suppress_video"]:
            job["suppress_video"] = True
            logging.info("job %d: no output video for %s", job["index"], job["source"])
        if not values:
            self._job_warning(job, STAGE_OPTION, f"{option}: no time reference given")
        for value in values:
            try:
                check_time_reference(value)
            except FormatError as exc:
                self._job_warning(job, STAGE_OPTION, f"{option}: ignoring: {exc}")
                continue
            self._timestamps.append(value)

    def _apply_image(self, values: List[str]) -> None:
        self._attach_images(OptionKind.IMAGE.value, values)

    def _apply_only_image(self, values: List[str]) -> None:
        self._attach_images(OptionKind.ONLY_IMAGE.value, values)

    def _set_trim(self, key: str, option: str, values: List[str]) -> None:
        job = self._current_job(option, values)
        if job is None:
            return
        if not values:
            self._job_warning(job, STAGE_OPTION, f"{option}: no time reference given")
            return
        if len(values) > 1:
            self._job_warning(
                job,
                STAGE_OPTION,
                f"{option}: takes one time reference, using the last of {values!r}",
            )
        value = values[-1]
        try:
            check_time_reference(value)
        except FormatError as exc:
            self._job_warning(job, STAGE_OPTION, f"{option}: ignoring: {exc}")
            return
        previous = job.get(key)
        if previous is not None:
            logging.warning(
                "job %d: %s: %s replaces %s", job["index"], option, value, previous
            )
        cast(Dict[str, str], job)[key] = value
        logging.info("job %d: %s: %s", job["index"], option, value)

    def _apply_start_position(self, values: List[str]) -> None:
        self._set_trim("start", OptionKind.START_POSITION.value, values)

    def _apply_duration(self, values: List[str]) -> None:
        self._set_trim("duration", OptionKind.DURATION.value, values)

    def _commit(self) -> None:
        job = self._job
        if job is None:
            return
        self._job = None
        if job["index"] != len(self.jobs):
            raise InternalInvariantError(
                f"job {job['index']} committed at position {len(self.jobs)}"
            )
        context = job["context"]
        output_dir = context.get("output_dir")
        prefix = context.get("name_prefix")
        if not job["suppress_video"]:
            try:
                job["output"] = self.allocator.allocate_video(
                    job["source"], output_dir, prefix
                )
            except (SequenceExhausted, DirectoryError) as exc:
                self._job_warning(job, STAGE_NAMING, f"no output video: {exc}")
        for time_reference in self._timestamps:
            try:
                output = self.allocator.allocate_image(
                    job["source"], time_reference, output_dir, prefix
                )
            except (SequenceExhausted, DirectoryError) as exc:
                self._job_warning(
                    job,
                    STAGE_NAMING,
                    f"no output image for time reference {time_reference}: {exc}",
                )
                continue
            job["images"].append({"time_reference": time_reference, "output": output})
        self._timestamps = []
        self.jobs.append(job)


def build_jobs(
    tokens: Iterable[str],
    encoder: FFmpegEncoder,
    allocator: Optional[NameAllocator] = None,
    errors: Optional[ErrorLog] = None,
) -> List[Job]:
    return JobModelBuilder(encoder, allocator, errors).build(tokens)


class EncodeDriver:
    # Newest job first; within a job, images before the video.

    def __init__(
        self,
        encoder: FFmpegEncoder,
        errors: ErrorLog,
        scratch_root: Optional[str] = None,
    ) -> None:
        self.encoder = encoder
        self.errors = errors
        self.scratch_root = scratch_root

    def run(self, jobs: Sequence[Job]) -> int:
        if not jobs:
            raise InternalInvariantError("no video to encode")
        before = len(self.errors)
        for job in reversed(jobs):
            self._check_job(job)
            self._encode_images(job)
            self._encode_video(job)
        return len(self.errors) - before

    @staticmethod
    def _check_job(job: Job) -> None:
        if not isinstance(job, dict) or not job.get("source") or "images" not in job:
            raise InternalInvariantError(f"malformed job in job list: {job!r}")

    def _failed(self, job: Job, stage: str, output: Optional[str], detail: str) -> None:
        logging.error("job %d: %s failed for %s: %s", job["index"], stage, job["source"], detail)
        self.errors.record(
            stage, detail, job_index=job["index"], source=job["source"], output=output
        )

    def _encode_images(self, job: Job) -> None:
        if not job["images"]:
            logging.info("job %d: no output image for %s", job["index"], job["source"])
            return
        for request in job["images"]:
            try:
                self.encoder.extract_image(
                    job["source"], request["time_reference"], request["output"]
                )
            except EncodeFailure as exc:
                self._failed(
                    job,
                    STAGE_IMAGE,
                    request["output"],
                    f"time reference: {request['time_reference']}: {exc}",
                )
                continue
            logging.info("job %d: image: %s", job["index"], request["output"])

    def _encode_video(self, job: Job) -> None:
        if job["suppress_video"]:
            logging.info("job %d: only images requested for %s", job["index"], job["source"])
            return
        output = job.get("output")
        if not output:
            logging.info("job %d: no output video for %s", job["index"], job["source"])
            return
        start = job.get("start")
        duration = job.get("duration")
        bounds = f"position: {start or 'MIN'}: duration: {duration or 'MAX'}"
        try:
            workdir = tempfile.mkdtemp(prefix="vclip-", dir=self.scratch_root)
        except OSError as exc:
            self._failed(job, STAGE_VIDEO, output, f"{bounds}: no scratch directory: {exc}")
            return
        try:
            self.encoder.encode_video(job["source"], output, start, duration, workdir)
        except EncodeFailure as exc:
            self._failed(job, STAGE_VIDEO, output, f"{bounds}: {exc}")
        else:
            logging.info("job %d: video: %s", job["index"], output)
        finally:
            shutil.rmtree(workdir, ignore_errors=True)


def cleanup_output_dirs(
    jobs: Sequence[Job],
    created_dirs: Iterable[str] = (),
    errors: Optional[ErrorLog] = None,
) -> List[str]:
    candidates: List[str] = []
    for job in jobs:
        output_dir = job["context"].get("output_dir")
        if output_dir:
            candidates.append(strip_directory(output_dir))
    candidates.extend(strip_directory(d) for d in created_dirs)

    removed: List[str] = []
    seen: set[str] = {os.path.abspath(os.getcwd())}
    for directory in candidates:
        key = os.path.abspath(directory)
        if key in seen:
            continue
        seen.add(key)
        if not os.path.isdir(directory):
            logging.info("clean-up: not a directory: %s", directory)
            continue
        try:
            entries = os.listdir(directory)
        except OSError as exc:
            logging.warning("clean-up: cannot list %s: %s", directory, exc)
            continue
        if entries:
            logging.info("clean-up: not empty: %s", directory)
            continue
        if not os.access(directory, os.W_OK):
            logging.info("clean-up: not writable: %s", directory)
            continue
        try:
            os.rmdir(directory)
        except OSError as exc:
            logging.warning("clean-up: failed to delete directory %s: %s", directory, exc)
            if errors is not None:
                errors.record(STAGE_CLEANUP, f"failed to delete directory: {exc}", output=directory)
            continue
        logging.info("clean-up: empty directory removed: %s", directory)
        removed.append(directory)
    return removed


def format_plan(jobs: Sequence[Job]) -> str:
    lines: List[str] = ["review:"]
    for job in jobs:
        lines.append(f"SOURCE [{job['index']}]: {job['source']}")
        if job["suppress_video"]:
            lines.append("  OUTPUT: none (only images)")
        elif job.get("output"):
            lines.append(
                f"  OUTPUT: {job['output']} "
                f"(position {job.get('start', 'MIN')}, duration {job.get('duration', 'MAX')})"
            )
        else:
            lines.append("  OUTPUT: none (no usable output name)")
        for request in job["images"]:
            lines.append(f"  IMAGE {request['time_reference']}: {request['output']}")
    return "\n".join(lines)


_CONFIRM_HELP = (
    "Y: proceed to conversion\n"
    "n, N, no, No, NO: cancel and remove created folders"
)


def ask_to_continue(read: Optional[Callable[[str], str]] = None) -> bool:
    if read is None:
        read = input
    while True:
        try:
            answer = read("Do you want to continue? [Y/n/?] ")
        except EOFError:
            return False
        first = answer[:1]
        if first == "Y":
            return True
        if first in ("n", "N"):
            return False
        if first == "?":
            print(_CONFIRM_HELP, file=sys.stderr)


def report_errors(errors: ErrorLog) -> None:
    if len(errors):
        logging.warning("error listing:\n%s", errors.render().rstrip("\n"))
    else:
        logging.info("no errors during processing")


def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="vclip",
        allow_abbrev=False,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Encode trimmed videos and snapshot images from source videos.",
        epilog=(
            "job options:\n"
            "  vclip {-c | --config} PATH\n"
            "  vclip [--source-dir DIR] [--output-dir DIR] [--base-name PREFIX]\n"
            "        { {-v | --video} FILE\n"
            "          [{-i | --image | -oi | --only-image} HH:MM:SS[.f[f]]...]\n"
            "          [-ss POSITION] [-t DURATION] }...\n"
            "\n"
            "Directory options apply to the next video and are inherited by\n"
            "later ones. Image, position and duration options refer to the\n"
            "most recent video."
        ),
    )
    ap.add_argument(
        "--yes",
        action="store_true",
        help="Do not ask for confirmation before encoding.",
    )
    ap.add_argument(
        "--ffmpeg",
        default=os.getenv("VCLIP_FFMPEG", FFMPEG_BIN),
        help="ffmpeg executable (default: $VCLIP_FFMPEG or ffmpeg).",
    )
    ap.add_argument(
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (--verbose, --verbose --verbose).",
    )
    return ap


def run_batch(
    tokens: Sequence[str], encoder: FFmpegEncoder, assume_yes: bool = False
) -> List[Job]:
    with ErrorLog() as errors:
        builder = JobModelBuilder(encoder, NameAllocator(), errors)
        jobs = builder.build(tokens)
        if not jobs:
            logging.warning("no source video was accepted: nothing to encode")
        else:
            print(format_plan(jobs), file=sys.stderr)
            if assume_yes or ask_to_continue():
                logging.warning("processing...")
                EncodeDriver(encoder, errors).run(jobs)
            else:
                logging.warning("canceling...")
        cleanup_output_dirs(jobs, builder.created_dirs, errors)
        report_errors(errors)
    return jobs


def main(argv: Optional[Sequence[str]] = None) -> None:
    ap = build_arg_parser()
    args, tokens = ap.parse_known_args(argv)

    level = (
        logging.WARNING
        if args.verbose == 0
        else (logging.INFO if args.verbose == 1 else logging.DEBUG)
    )
    global VERBOSE_LEVEL
    VERBOSE_LEVEL = args.verbose
    logging.basicConfig(
        level=level, stream=sys.stderr, format="%(levelname)s: %(message)s"
    )

    try:
        tokens = check_command_line(tokens)
        config_path, tokens = split_config_option(tokens)
    except FormatError as exc:
        ap.error(str(exc))

    if config_path is not None:
        try:
            tokens = load_config(config_path)
        except FormatError as exc:
            logging.error("%s", exc)
            sys.exit(USAGE_ERROR_EXIT)
        logging.info("options read from %s", config_path)

    if not tokens:
        ap.error("no options given: at least one --video is required")

    encoder = FFmpegEncoder(args.ffmpeg, verbose=args.verbose)
    try:
        run_batch(tokens, encoder, assume_yes=args.yes)
    except InternalInvariantError as exc:
        logging.critical("internal error: %s: quitting", exc)
        sys.exit(INTERNAL_ERROR_EXIT)
    logging.warning("DONE")


if __name__ == "__main__":
    main()
