#!/usr/bin/env python3
"""
ENA FASTQ Fetcher with Sample Renaming
======================================
- Resolves run accessions through the ENA portal filereport API
- Downloads single-end or paired-end FASTQ files named after the sample
- Resumable transfers (.part files + HTTP Range) with bounded retries
- Bounded worker pool; console shows only start/end per sample
- Full per-sample trace in LOGDIR/<sample>.log, outcome in LOGDIR/<sample>.ok|.fail

Mapping file (header optional, commas or tabs OK):
    strain,ERR
    1D-053,ERR4013432

Usage:
    python fetch_ena_fastq.py mapping.csv
    python fetch_ena_fastq.py mapping.csv --jobs 8 --output fastq --log-dir logs
    python fetch_ena_fastq.py mapping.csv --backend wget --transfer-opts="--no-check-certificate"

Environment defaults (flags win):
    OUTDIR=fastq    JOBS=6    WGET_OPTS=""    LOGDIR=logs
"""

from __future__ import annotations
import argparse, csv, logging, os, re, shlex, shutil, subprocess, sys, threading, time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from tqdm import tqdm

logger = logging.getLogger(__name__)

# Per-sample log files all hang off this one logger (see SampleLogRouter)
sample_logger = logging.getLogger(f"{__name__}.sample")
sample_logger.setLevel(logging.DEBUG)
sample_logger.propagate = False

SampleLog = Union[logging.Logger, logging.LoggerAdapter]

# ENA portal endpoint returning one TSV row per run
ENA_FILEREPORT = "https://www.ebi.ac.uk/ena/portal/api/filereport"
REPORT_FIELDS = "run_accession,fastq_ftp"

DEFAULT_TRIES = 10
DEFAULT_TIMEOUT = 30.0
DEFAULT_RETRY_WAIT = 1.0
MAX_RETRY_WAIT = 30.0
CHUNK_SIZE = 65536

# Per-sample log layout: "[2024-05-01 12:00:00] INFO Lookup ..."
SAMPLE_LOG_FORMAT = "[%(asctime)s] %(levelname)s %(message)s"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

FIELD_SEPARATOR = re.compile(r"[,\t]")
PART_SEPARATOR = re.compile(r"[;,]")
HEADER_SAMPLE = re.compile(r"strain", re.IGNORECASE)
HEADER_ACCESSION = re.compile(r"err|accession", re.IGNORECASE)

# HTTP statuses worth another attempt; other 4xx are final
RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class FetchError(Exception):
    """Base class for everything this tool raises on purpose."""


class UsageError(FetchError):
    """Bad invocation. Raised before any work starts."""


class DependencyMissing(FetchError):
    """A required external transfer tool is not installed."""


class ResolutionError(FetchError):
    """The archive could not tell us where the reads of an accession live."""

    TRANSPORT = "transport"
    NO_DATA = "no_data"

    def __init__(self, accession: str, reason: str, detail: str = ""):
        self.accession = accession
        self.reason = reason
        self.detail = detail
        if reason == self.TRANSPORT:
            message = f"API request failed for {accession}"
        else:
            message = f"No FASTQ URLs for {accession}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class TransferFailure(FetchError):
    """A single transfer attempt failed."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class UnexpectedPartCount(FetchError):
    def __init__(self, accession: str, count: int, raw: str):
        self.accession = accession
        self.count = count
        self.raw = raw
        super().__init__(f"Unexpected #files for {accession}: {count}  ({raw})")


# ---------------------------------------------------------------------------
# Data containers
# ---------------------------------------------------------------------------

class Outcome(str, Enum):
    OK = "ok"        # marker <sample>.ok
    FAIL = "fail"    # marker <sample>.fail


@dataclass(frozen=True)
class MappingEntry:
    sample_raw: str     # label as written in the mapping file (trimmed)
    accession: str      # ENA run accession, e.g. ERR4013432

    @property
    def sample(self) -> str:
        return sanitize_name(self.sample_raw)


@dataclass(frozen=True)
class Resolution:
    accession: str          # run accession that was looked up
    raw: str                # fastq_ftp field exactly as the API returned it
    parts: Tuple[str, ...]  # cleaned host+path parts, no scheme

    @property
    def urls(self) -> List[str]:
        return [to_url(part) for part in self.parts]


@dataclass
class SampleResult:
    sample: str                         # sanitized name (file and marker stem)
    accession: str                      # run accession from the mapping
    outcome: Outcome = Outcome.FAIL     # FAIL until the job proves otherwise
    layout: str = ""                    # "PE", "SE" or "" when nothing was downloaded
    files: List[Path] = field(default_factory=list)  # target paths, in part order
    bytes_downloaded: int = 0           # bytes written during this run only
    reason: str = ""                    # short failure reason for the manifest
    elapsed: float = 0.0                # wall seconds for the whole job

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.OK


@dataclass(frozen=True)
class FetchConfig:
    output_dir: Path = Path("fastq")    # FASTQ files land here
    log_dir: Path = Path("logs")        # per-sample logs, markers and manifest
    jobs: int = 6                       # samples in flight at once
    transfer_opts: str = ""             # extra wget-style flags
    backend: str = "requests"           # "requests" or "wget"
    tries: int = DEFAULT_TRIES          # attempts per file, first one included
    timeout: float = DEFAULT_TIMEOUT    # seconds, per connect/read
    retry_wait: float = DEFAULT_RETRY_WAIT  # base pause, grows linearly per attempt
    api_url: str = ENA_FILEREPORT       # filereport endpoint
    manifest: Optional[str] = "download_manifest.csv"  # None disables the CSV
    progress: bool = True               # show the tqdm bar


@dataclass
class ProgressTracker:
    total: int = 0                      # samples scheduled
    completed: int = 0                  # samples finished OK
    failed: int = 0                     # samples finished FAIL
    start_time: float = field(default_factory=time.time)
    bytes_downloaded: int = 0           # summed over finished samples
    lock: threading.Lock = field(default_factory=threading.Lock)  # workers update concurrently

    def update(self, success: bool = True, bytes_count: int = 0):
        """Record one finished sample. Thread-safe."""
        with self.lock:
            if success:
                self.completed += 1
            else:
                self.failed += 1
            self.bytes_downloaded += bytes_count

    @property
    def elapsed_time(self) -> float:
        return time.time() - self.start_time

    @property
    def eta(self) -> Optional[float]:
        """Seconds left at the current sample rate, None until one sample is done."""
        done = self.completed + self.failed
        if done == 0 or self.elapsed_time <= 0:
            return None
        rate = done / self.elapsed_time
        remaining = self.total - done
        return remaining / rate if rate > 0 else None

    @property
    def throughput_mb_s(self) -> float:
        if self.elapsed_time == 0:
            return 0
        return (self.bytes_downloaded / (1024 * 1024)) / self.elapsed_time


# ---------------------------------------------------------------------------
# Console output (brief) - shared by all workers
# ---------------------------------------------------------------------------

_console_lock = threading.Lock()


def timestamp() -> str:
    return datetime.now().strftime(TIMESTAMP_FORMAT)


def console(message: str) -> None:
    """Print one timestamped line without tearing the progress bar."""
    with _console_lock:
        tqdm.write(f"[{timestamp()}] {message}")


# ---------------------------------------------------------------------------
# HTTP session
# ---------------------------------------------------------------------------

class EnaSession:
    """
    Pooled requests session with a default timeout and fixed headers.

    The session itself (used for filereport lookups) retries rate limits and
    5xx inside one request. File transfers go through for_transfers(), a
    sibling whose adapter never retries, so HttpFetcher's attempt loop is the
    only bound on how often a file URL is requested.
    """

    def __init__(self, max_retries: int = 3, backoff_factor: float = 1.0,
                 pool_size: int = 16, timeout: float = DEFAULT_TIMEOUT):
        # One persistent session, keep-alive across samples
        self.session = requests.Session()
        self.timeout = timeout          # seconds, applied to every get() without its own
        self.pool_size = pool_size
        self._transfers: List["EnaSession"] = []

        retry_strategy = Retry(
            total=max_retries,                           # 0 turns adapter retries off
            status_forcelist=[429, 500, 502, 503, 504],  # rate limit and server errors
            backoff_factor=backoff_factor,               # exponential sleep between tries
            allowed_methods=["HEAD", "GET"],             # read-only requests only
            raise_on_status=False,                       # hand the last response back
        )

        adapter = HTTPAdapter(
            max_retries=retry_strategy,
            pool_connections=pool_size,   # cached host pools
            pool_maxsize=pool_size,       # connections per host, one per worker
            pool_block=True,              # wait for a free connection instead of opening extras
        )
        self.session.mount("https://", adapter)
        self.session.mount("http://", adapter)

        # identity encoding keeps Range offsets aligned with the bytes we store
        self.session.headers.update({
            "User-Agent": "ENA-FASTQ-Fetcher/1.0 (+https://www.ebi.ac.uk/ena)",
            "Accept": "*/*",
            "Accept-Encoding": "identity",
            "Connection": "keep-alive",
        })

    def for_transfers(self) -> "EnaSession":
        """Sibling session for file downloads: same pool and timeout, no adapter retries."""
        transfers = EnaSession(max_retries=0, backoff_factor=0,
                               pool_size=self.pool_size, timeout=self.timeout)
        self._transfers.append(transfers)
        return transfers

    def apply_options(self, verify: bool = True, headers: Optional[Dict[str, str]] = None):
        self.session.verify = verify
        if headers:
            self.session.headers.update(headers)

    def get(self, url: str, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        return self.session.get(url, **kwargs)

    def close(self):
        for transfers in self._transfers:
            transfers.close()
        self.session.close()


def parse_http_options(opts: str) -> Tuple[bool, Dict[str, str]]:
    """
    Translate the wget-style extra option string for the requests backend.

    Supported: --no-check-certificate, --header=NAME: VALUE, --user-agent=UA
    (the two-token forms "--header X" / "--user-agent X" work too).
    Returns (verify, extra_headers).
    """
    verify = True
    headers: Dict[str, str] = {}
    tokens = iter(shlex.split(opts or ""))

    for token in tokens:
        flag, has_value, value = token.partition("=")
        if flag in ("--header", "--user-agent") and not has_value:
            value = next(tokens, None)
            if value is None:
                raise UsageError(f"{flag} needs a value")

        if token == "--no-check-certificate":
            verify = False
        elif flag == "--header":
            name, sep, header_value = value.partition(":")
            if not sep or not name.strip():
                raise UsageError(f"Malformed header (expected 'Name: value'): {value}")
            headers[name.strip()] = header_value.strip()
        elif flag == "--user-agent":
            headers["User-Agent"] = value
        else:
            raise UsageError(
                f"Unsupported transfer option for the requests backend: {token} "
                f"(use --backend wget to pass arbitrary wget flags)"
            )
    return verify, headers


# ---------------------------------------------------------------------------
# Name sanitizer + mapping normalizer
# ---------------------------------------------------------------------------

def sanitize_name(raw: str) -> str:
    """Keep dashes; spaces/tabs -> underscore; drop one trailing underscore."""
    name = raw.replace(" ", "_").replace("\t", "_")
    return name[:-1] if name.endswith("_") else name


def _clean_field(value: str) -> str:
    return value.strip(" \t\r")


def is_header(fields: List[str]) -> bool:
    """Loose header check: 'strain'-ish first column, 'err'/'accession'-ish second."""
    if len(fields) < 2:
        return False
    return bool(HEADER_SAMPLE.search(fields[0])) and bool(HEADER_ACCESSION.search(fields[1]))


def normalize_mapping(lines: Iterable[str]) -> Iterator[MappingEntry]:
    """
    Turn raw mapping lines into MappingEntry records, in input order.

    Fields are split on every comma or tab. The first line is dropped only when
    it looks like a header. Lines with fewer than two fields, or with an empty
    sample/accession after trimming, are skipped.
    """
    for lineno, line in enumerate(lines, 1):
        fields = FIELD_SEPARATOR.split(line.rstrip("\r\n"))
        if lineno == 1 and is_header(fields):
            continue
        if len(fields) < 2:
            continue

        sample, accession = _clean_field(fields[0]), _clean_field(fields[1])
        if sample and accession:
            yield MappingEntry(sample_raw=sample, accession=accession)


def parse_mapping(text: str) -> Iterator[MappingEntry]:
    return normalize_mapping(text.splitlines())


def read_mapping(path) -> Iterator[MappingEntry]:
    # newline='' keeps CRLF endings intact; the trimming step removes them
    with open(path, "r", encoding="utf-8-sig", newline="") as f:
        yield from normalize_mapping(f)


def find_name_collisions(entries: Iterable[MappingEntry]) -> Dict[str, List[str]]:
    """Sanitized names claimed by more than one mapping row."""
    claimed = defaultdict(list)
    for entry in entries:
        claimed[entry.sample].append(entry.sample_raw)
    return {name: raws for name, raws in claimed.items() if len(raws) > 1}


# ---------------------------------------------------------------------------
# Accession resolver
# ---------------------------------------------------------------------------

def extract_fastq_field(report: str, accession: str) -> str:
    """Second column of the first data row whose run_accession matches."""
    for line in report.splitlines()[1:]:
        columns = line.rstrip("\r").split("\t")
        if columns[0] == accession and len(columns) > 1:
            return columns[1]
    return ""


def split_parts(raw: str) -> List[str]:
    """'a;b' or 'a,b' -> ['a', 'b'] with every whitespace character removed."""
    parts = [re.sub(r"\s+", "", part) for part in PART_SEPARATOR.split(raw)]
    return [part for part in parts if part]


def to_url(part: str) -> str:
    return part if "://" in part else f"https://{part}"


class AccessionResolver:
    def __init__(self, session: EnaSession, api_url: str = ENA_FILEREPORT):
        self.session = session
        self.api_url = api_url

    def query(self, accession: str) -> str:
        params = {
            "accession": accession,
            "result": "read_run",
            "fields": REPORT_FIELDS,
            "download": "true",
        }
        try:
            response = self.session.get(self.api_url, params=params)
            response.raise_for_status()
        except requests.RequestException as e:
            raise ResolutionError(accession, ResolutionError.TRANSPORT, str(e)) from e
        return response.text

    def resolve(self, accession: str) -> Resolution:
        raw = extract_fastq_field(self.query(accession), accession)
        if not raw.strip():
            raise ResolutionError(accession, ResolutionError.NO_DATA)
        return Resolution(accession=accession, raw=raw, parts=tuple(split_parts(raw)))


# ---------------------------------------------------------------------------
# Transfer executors
# ---------------------------------------------------------------------------

def has_data(path: Path) -> bool:
    try:
        return path.stat().st_size > 0
    except FileNotFoundError:
        return False


class HttpFetcher:
    """Resumable HTTPS download of one part through a zero-retry transfer session."""

    name = "requests"

    def __init__(self, session: EnaSession, tries: int = DEFAULT_TRIES,
                 retry_wait: float = DEFAULT_RETRY_WAIT):
        self.session = session
        self.tries = tries
        self.retry_wait = retry_wait

    def fetch(self, url: str, dest: Path, log: SampleLog) -> Tuple[bool, int]:
        """
        Download url to dest. Returns (success, bytes written by completed attempts).

        A non-empty dest is never re-fetched. Partial data lives in dest.part and
        is continued with a Range request on the next attempt (or the next run).
        """
        dest = Path(dest)
        if has_data(dest):
            log.info("File already there; not retrieving: %s", dest)
            return True, 0

        dest.parent.mkdir(parents=True, exist_ok=True)
        temp_path = dest.with_name(dest.name + ".part")
        received = 0

        for attempt in range(1, self.tries + 1):
            try:
                received += self._attempt(url, temp_path, log)
                temp_path.replace(dest)
                break
            except (TransferFailure, requests.RequestException) as e:
                log.warning("Attempt %d/%d failed for %s: %s", attempt, self.tries, url, e)
                if isinstance(e, TransferFailure) and not e.retryable:
                    log.error("Not retrying %s", url)
                    return False, received
                if attempt < self.tries and self.retry_wait > 0:
                    time.sleep(min(self.retry_wait * attempt, MAX_RETRY_WAIT))
            except OSError as e:
                log.error("Cannot write %s: %s", temp_path, e)
                return False, received
        else:
            log.error("Giving up on %s after %d attempts", url, self.tries)
            return False, received

        if not has_data(dest):
            log.error("Downloaded file is missing or empty: %s", dest)
            return False, received
        log.info("Saved %s (%d bytes)", dest, dest.stat().st_size)
        return True, received

    def _attempt(self, url: str, temp_path: Path, log: SampleLog) -> int:
        start_byte = temp_path.stat().st_size if temp_path.exists() else 0
        headers = {"Range": f"bytes={start_byte}-"} if start_byte > 0 else {}

        with self.session.get(url, headers=headers, stream=True) as response:
            status = response.status_code
            if status == 416 and start_byte > 0:
                log.info("%s already complete (%d bytes)", temp_path.name, start_byte)
                return 0
            if status not in (200, 206):
                raise TransferFailure(f"HTTP {status}", retryable=status in RETRYABLE_STATUS)

            # A 200 to a ranged request means the server restarted from byte 0
            mode = "ab" if status == 206 else "wb"
            if start_byte > 0:
                if status == 206:
                    log.info("Resuming %s at byte %d", temp_path.name, start_byte)
                else:
                    log.info("Server ignored Range; restarting %s", temp_path.name)

            written = 0
            with open(temp_path, mode) as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
                        written += len(chunk)

            expected = response.headers.get("Content-Length", "")
            if expected.isdigit() and written < int(expected):
                raise TransferFailure(f"short read: {written} of {expected} bytes")
        return written


class WgetFetcher:
    """Delegates the transfer to wget (-nc --continue), forwarding extra flags verbatim."""

    name = "wget"

    def __init__(self, tries: int = DEFAULT_TRIES, timeout: float = DEFAULT_TIMEOUT,
                 extra_opts: str = ""):
        self.executable = shutil.which("wget")
        if self.executable is None:
            raise DependencyMissing("wget is required for --backend wget")
        self.tries = tries
        self.timeout = timeout
        self.extra = shlex.split(extra_opts or "")

    def command(self, url: str, dest: Path) -> List[str]:
        return [
            self.executable, "-nc", f"--tries={self.tries}", f"--timeout={self.timeout:g}",
            "--continue", *self.extra, url, "-O", str(dest),
        ]

    def fetch(self, url: str, dest: Path, log: SampleLog) -> Tuple[bool, int]:
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        before = dest.stat().st_size if dest.exists() else 0

        cmd = self.command(url, dest)
        log.info("Running: %s", shlex.join(cmd))
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, errors="replace")
        except OSError as e:
            log.error("Could not run wget: %s", e)
            return False, 0

        for line in (proc.stdout + proc.stderr).splitlines():
            if line.strip():
                log.info("wget: %s", line.rstrip())

        after = dest.stat().st_size if dest.exists() else 0
        if proc.returncode != 0:
            log.error("wget exited with status %d for %s", proc.returncode, url)
            return False, max(after - before, 0)
        if not has_data(dest):
            log.error("Downloaded file is missing or empty: %s", dest)
            return False, max(after - before, 0)
        return True, max(after - before, 0)


def make_fetcher(config: FetchConfig, session: EnaSession):
    """Pick the transfer backend. Raises UsageError/DependencyMissing (pre-flight)."""
    if config.backend == "wget":
        return WgetFetcher(tries=config.tries, timeout=config.timeout,
                           extra_opts=config.transfer_opts)
    if config.backend == "requests":
        verify, headers = parse_http_options(config.transfer_opts)
        # config.tries is the only retry bound for file URLs
        transfers = session.for_transfers()
        if not verify or headers:
            transfers.apply_options(verify=verify, headers=headers)
        return HttpFetcher(transfers, tries=config.tries, retry_wait=config.retry_wait)
    raise UsageError(f"Unknown backend: {config.backend}")


# ---------------------------------------------------------------------------
# Sample job
# ---------------------------------------------------------------------------

class SampleLogRouter(logging.Handler):
    """
    The one handler on sample_logger. Forwards each record to the file
    handler(s) attached for the sample named in record.sample.

    Jobs attach and detach their own FileHandler here, so the logger's
    handler list stays fixed while workers are logging.
    """

    def __init__(self):
        super().__init__(logging.DEBUG)
        self._routes: Dict[str, List[logging.Handler]] = defaultdict(list)
        self._routes_lock = threading.Lock()

    def attach(self, sample: str, handler: logging.Handler):
        with self._routes_lock:
            self._routes[sample].append(handler)

    def detach(self, sample: str, handler: logging.Handler):
        with self._routes_lock:
            handlers = self._routes[sample]
            handlers.remove(handler)
            if not handlers:
                del self._routes[sample]

    @property
    def samples(self) -> List[str]:
        with self._routes_lock:
            return sorted(self._routes)

    def handle(self, record: logging.LogRecord):
        with self._routes_lock:
            targets = list(self._routes.get(getattr(record, "sample", None), ()))
        # FileHandler.handle takes that handler's own lock
        for target in targets:
            target.handle(record)
        return bool(targets)

    def emit(self, record: logging.LogRecord):
        self.handle(record)


sample_router = SampleLogRouter()
sample_logger.addHandler(sample_router)


class SampleJob:
    """
    Download one sample: lookup -> PE/SE download -> ok/fail marker.

    Console gets a Starting and a Finished line; everything else goes to
    <log_dir>/<sample>.log. The marker (<sample>.ok or <sample>.fail, holding
    the accession) is the durable outcome.
    """

    def __init__(self, entry: MappingEntry, config: FetchConfig,
                 resolver: AccessionResolver, fetcher):
        self.entry = entry
        self.sample = entry.sample
        self.config = config
        self.resolver = resolver
        self.fetcher = fetcher
        self.log_path = config.log_dir / f"{self.sample}.log"

    def marker_path(self, outcome: Outcome) -> Path:
        return self.config.log_dir / f"{self.sample}.{outcome.value}"

    def run(self) -> SampleResult:
        accession = self.entry.accession
        result = SampleResult(sample=self.sample, accession=accession)
        started = time.time()

        self._reset()
        console(f"Starting: {self.sample} ({accession})")
        log, handler = self._open_log()
        try:
            self._download(result, log)
        except ResolutionError as e:
            if e.reason == ResolutionError.TRANSPORT:
                log.error("%s", e)
            else:
                log.warning("%s", e)
            result.reason = str(e)
        except UnexpectedPartCount as e:
            log.warning("%s", e)
            result.reason = f"unexpected file count {e.count}"
        except Exception as e:
            log.exception("Unexpected error while processing %s", self.sample)
            result.reason = f"internal error: {e}"
            result.outcome = Outcome.FAIL
        finally:
            result.elapsed = time.time() - started
            try:
                self._finish(result, log)
            finally:
                sample_router.detach(self.sample, handler)
                handler.close()

        if result.ok:
            console(f"Finished OK: {self.sample}")
        else:
            console(f"Finished FAIL: {self.sample}  (see {self.log_path})")
        return result

    def _reset(self):
        for path in (self.marker_path(Outcome.OK), self.marker_path(Outcome.FAIL), self.log_path):
            path.unlink(missing_ok=True)

    def _open_log(self) -> Tuple[logging.LoggerAdapter, logging.Handler]:
        handler = logging.FileHandler(self.log_path, mode="a", encoding="utf-8")
        handler.setFormatter(logging.Formatter(SAMPLE_LOG_FORMAT, datefmt=TIMESTAMP_FORMAT))
        sample_router.attach(self.sample, handler)
        return logging.LoggerAdapter(sample_logger, {"sample": self.sample}), handler

    def _download(self, result: SampleResult, log: SampleLog):
        accession = self.entry.accession
        out_dir = self.config.output_dir

        log.info("Lookup %s (%s)", self.sample, accession)
        resolution = self.resolver.resolve(accession)
        urls = resolution.urls

        if len(urls) == 2:
            result.layout = "PE"
            targets = [out_dir / f"{self.sample}_1.fastq.gz", out_dir / f"{self.sample}_2.fastq.gz"]
            labels = ["URL1", "URL2"]
        elif len(urls) == 1:
            result.layout = "SE"
            targets = [out_dir / f"{self.sample}.fastq.gz"]
            labels = ["URL"]
        else:
            raise UnexpectedPartCount(accession, len(urls), resolution.raw)

        log.info("Downloading %s", result.layout)
        all_fetched = True
        # Every part is attempted, even after a failure, so the log shows the full picture
        for label, url, target in zip(labels, urls, targets):
            log.info("%s: %s -> %s", label, url, target)
            fetched, nbytes = self.fetcher.fetch(url, target, log)
            result.bytes_downloaded += nbytes
            all_fetched = all_fetched and fetched

        result.files = targets
        if all_fetched and all(has_data(target) for target in targets):
            result.outcome = Outcome.OK
        else:
            result.reason = "missing/empty files" if len(targets) == 2 else "missing/empty file"

    def _finish(self, result: SampleResult, log: SampleLog):
        marker = self.marker_path(result.outcome)
        temp_marker = marker.with_name(marker.name + ".tmp")
        temp_marker.write_text(f"{result.accession}\n", encoding="utf-8")
        temp_marker.replace(marker)

        if result.ok:
            log.info("OK: %s", self.sample)
        else:
            log.info("FAIL: %s (%s)", self.sample, result.reason or "unknown")


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

def run_jobs(entries: Iterable[MappingEntry], config: FetchConfig,
             resolver: AccessionResolver, fetcher,
             progress: Optional[ProgressTracker] = None) -> List[SampleResult]:
    """Run one SampleJob per entry with at most config.jobs in flight."""
    entries = list(entries)
    if progress is None:
        progress = ProgressTracker(total=len(entries))
    results: List[SampleResult] = []
    counts = {"ok": 0, "fail": 0}

    with ThreadPoolExecutor(max_workers=config.jobs) as executor:
        # dict keeps mapping order; the executor starts jobs in submission order
        future_to_entry = {
            executor.submit(SampleJob(entry, config, resolver, fetcher).run): entry
            for entry in entries
        }

        with tqdm(total=len(entries), desc="Samples", unit="sample",
                  disable=not config.progress) as pbar:
            for future in as_completed(future_to_entry):
                entry = future_to_entry[future]
                try:
                    result = future.result()
                except Exception as e:
                    logger.exception("Job for %s crashed", entry.sample)
                    console(f"Finished FAIL: {entry.sample}  (internal error: {e})")
                    result = SampleResult(sample=entry.sample, accession=entry.accession,
                                          reason=f"internal error: {e}")

                results.append(result)
                progress.update(success=result.ok, bytes_count=result.bytes_downloaded)
                counts["ok" if result.ok else "fail"] += 1
                pbar.update(1)

                eta = progress.eta
                pbar.set_postfix({
                    "ok": counts["ok"],
                    "fail": counts["fail"],
                    "MB/s": f"{progress.throughput_mb_s:.1f}",
                    "ETA": f"{eta:.0f}s" if eta is not None else "?",
                })

    return results


# ---------------------------------------------------------------------------
# Reporter
# ---------------------------------------------------------------------------

@dataclass
class RunSummary:
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)


def collect_markers(log_dir: Path) -> RunSummary:
    """Count .ok/.fail markers in log_dir; names come from the marker filenames."""
    log_dir = Path(log_dir)
    return RunSummary(
        succeeded=sorted(p.stem for p in log_dir.glob("*.ok") if p.is_file()),
        failed=sorted(p.stem for p in log_dir.glob("*.fail") if p.is_file()),
    )


def print_summary(summary: RunSummary, log_dir: Path,
                  progress: Optional[ProgressTracker] = None) -> None:
    print(f"\n[COMPLETED] Download Summary:")
    print(f"  Total samples: {summary.total}")
    print(f"  Succeeded:     {len(summary.succeeded)}")
    print(f"  Failed:        {len(summary.failed)}")
    if progress is not None:
        print(f"  Total data:    {progress.bytes_downloaded / (1024 * 1024):.1f} MB")
        print(f"  Total time:    {progress.elapsed_time / 60:.1f} minutes")

    if summary.failed:
        print(f"\nFailed samples (see {log_dir}/<sample>.log for details):")
        for name in summary.failed:
            print(f"  - {name}  ({Path(log_dir) / f'{name}.log'})")


MANIFEST_FIELDS = ["sample", "accession", "layout", "status", "files", "bytes", "elapsed_s", "reason"]


def write_manifest(output_path: Path, results: List[SampleResult]) -> None:
    """Per-sample outcome table for this run, sorted by sample name."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=MANIFEST_FIELDS)
        writer.writeheader()
        for result in sorted(results, key=lambda r: r.sample):
            writer.writerow({
                "sample": result.sample,
                "accession": result.accession,
                "layout": result.layout,
                "status": result.outcome.value,
                "files": ";".join(str(p) for p in result.files),
                "bytes": result.bytes_downloaded,
                "elapsed_s": f"{result.elapsed:.1f}",
                "reason": result.reason,
            })


# ---------------------------------------------------------------------------
# Pipeline + CLI
# ---------------------------------------------------------------------------

def run_pipeline(mapping_path: Path, config: FetchConfig,
                 session: Optional[EnaSession] = None, fetcher=None) -> RunSummary:
    """Normalize the mapping, run every sample, then report from the markers."""
    owns_session = session is None
    if session is None:
        session = EnaSession(pool_size=max(config.jobs, 1), timeout=config.timeout)
    try:
        if fetcher is None:
            fetcher = make_fetcher(config, session)

        config.output_dir.mkdir(parents=True, exist_ok=True)
        config.log_dir.mkdir(parents=True, exist_ok=True)

        print(f"[INFO] Output:  {config.output_dir}")
        print(f"[INFO] Logs:    {config.log_dir}")
        print(f"[INFO] Jobs:    {config.jobs}")
        print(f"[INFO] Backend: {fetcher.name}")
        print(f"[INFO] Mapping: {mapping_path}")
        print()

        entries = list(read_mapping(mapping_path))
        for name, raws in sorted(find_name_collisions(entries).items()):
            logger.warning("Sample name %r is shared by %s; their files and markers will overwrite each other",
                           name, ", ".join(repr(r) for r in raws))

        progress = ProgressTracker(total=len(entries))
        resolver = AccessionResolver(session, api_url=config.api_url)
        results = run_jobs(entries, config, resolver, fetcher, progress)
    finally:
        if owns_session:
            session.close()

    summary = collect_markers(config.log_dir)
    print_summary(summary, config.log_dir, progress)

    if config.manifest:
        manifest_path = config.log_dir / config.manifest
        write_manifest(manifest_path, results)
        print(f"\n[INFO] Manifest written: {manifest_path}")
    return summary


def positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1: {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Download ENA FASTQ files for a sample -> accession mapping, renamed per sample",
        epilog="Example: python fetch_ena_fastq.py mapping.csv --jobs 8 --output fastq",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    env = os.environ

    parser.add_argument("mapping", help="CSV/TSV with sample,accession columns (header optional)")
    parser.add_argument("-o", "--output", default=env.get("OUTDIR", "fastq"),
                        help="Output folder for FASTQ files (env OUTDIR)")
    parser.add_argument("-j", "--jobs", type=positive_int, default=env.get("JOBS", "6"),
                        help="Parallel workers (env JOBS)")
    parser.add_argument("--transfer-opts", "--wget-opts", dest="transfer_opts",
                        default=env.get("WGET_OPTS", ""),
                        help='Extra transfer flags, e.g. --transfer-opts="--no-check-certificate" (env WGET_OPTS)')
    parser.add_argument("--log-dir", default=env.get("LOGDIR", "logs"),
                        help="Logs & status folder (env LOGDIR)")
    parser.add_argument("--backend", choices=["requests", "wget"], default="requests",
                        help="Transfer implementation")
    parser.add_argument("--tries", type=positive_int, default=DEFAULT_TRIES,
                        help="Attempts per file")
    parser.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT,
                        help="Per-attempt network timeout (seconds)")
    parser.add_argument("--retry-wait", type=float, default=DEFAULT_RETRY_WAIT,
                        help="Base wait between attempts (seconds, grows linearly)")
    parser.add_argument("--api-url", default=ENA_FILEREPORT,
                        help="ENA portal filereport endpoint")
    parser.add_argument("--manifest", default="download_manifest.csv",
                        help="Manifest filename (written in the log folder)")
    parser.add_argument("--no-manifest", action="store_true",
                        help="Do not write the manifest CSV")
    parser.add_argument("--no-progress", action="store_true",
                        help="Hide the progress bar")
    parser.add_argument("--verbose", action="store_true",
                        help="Verbose output")
    return parser


def config_from_args(args: argparse.Namespace) -> FetchConfig:
    return FetchConfig(
        output_dir=Path(args.output),
        log_dir=Path(args.log_dir),
        jobs=args.jobs,
        transfer_opts=args.transfer_opts,
        backend=args.backend,
        tries=args.tries,
        timeout=args.timeout,
        retry_wait=args.retry_wait,
        api_url=args.api_url,
        manifest=None if args.no_manifest else args.manifest,
        progress=not args.no_progress,
    )


def configure_logging(verbose: bool = False):
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO,
                        format="%(asctime)s - %(levelname)s - %(message)s")
    if not verbose:
        # urllib3 announces every retry; per-sample logs already carry the detail
        logging.getLogger("urllib3").setLevel(logging.ERROR)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)
    config = config_from_args(args)

    mapping_path = Path(args.mapping)
    session = EnaSession(pool_size=config.jobs, timeout=config.timeout)
    try:
        if not mapping_path.is_file():
            raise UsageError(f"Mapping file not found: {mapping_path}")
        fetcher = make_fetcher(config, session)
    except (UsageError, DependencyMissing) as e:
        session.close()
        print(f"Error: {e}", file=sys.stderr)
        return 2

    try:
        run_pipeline(mapping_path, config, session=session, fetcher=fetcher)
    finally:
        session.close()
    # Individual failures are reported in the summary and marker files, not the exit code
    return 0


def cli():
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n[INTERRUPTED] Process cancelled by user (partial .part files are kept for resume)")
        sys.exit(130)
    except Exception as e:
        print(f"\n[FATAL ERROR] {e}", file=sys.stderr)
        if "--verbose" in sys.argv:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    cli()
