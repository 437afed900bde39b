from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, wait
import enum
import json
import logging
import os
import re
import subprocess
import threading
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Set, Tuple

import requests

GFS_FILTER_URL = os.getenv("GFS_FILTER_URL", "https://nomads.ncep.noaa.gov/cgi-bin/filter_gfs_1p00.pl")
GFS_DATA_DIR = os.getenv("GFS_DATA_DIR", "data")
GRIB2JSON_BIN_PATH = os.getenv("GRIB2JSON_BIN_PATH", "converter/bin/grib2json")
CYCLE_HOURS = 6
# Observed on https://www.nco.ncep.noaa.gov/pmb/nwprod/prodstat/: f000 shows up at least 3h40m after cycle time.
PUBLISH_DELAY = timedelta(minutes=float(os.getenv("GFS_PUBLISH_DELAY_MINUTES", "220")))
KEEP_LAST_N_DATASETS = int(os.getenv("GFS_KEEP_LAST_N_DATASETS", "5"))
REFRESH_INTERVAL_SECONDS = float(os.getenv("GFS_REFRESH_INTERVAL_SECONDS", "600"))
FETCH_TIMEOUT_SECONDS = float(os.getenv("GFS_FETCH_TIMEOUT_SECONDS", "120"))
FETCH_CONNECT_TIMEOUT_SECONDS = 12
CONVERT_TIMEOUT_SECONDS = float(os.getenv("GFS_CONVERT_TIMEOUT_SECONDS", "300"))
BACKGROUND_FETCH_WORKERS = int(os.getenv("BACKGROUND_FETCH_WORKERS", "2"))
LOGGER = logging.getLogger("gfs_server.gfs_data")

_CYCLE_FILENAME_RE = re.compile(r"^(\d{10})\.json$")


class GfsIngestionError(RuntimeError):
    """Base class for failures while producing a cycle's dataset."""


class UpstreamUnavailableError(GfsIngestionError):
    """Raised when NOMADS cannot deliver the raw GRIB2 data."""


class UpstreamNotPublishedError(UpstreamUnavailableError):
    """Raised when NOMADS reports the cycle as not (yet) published."""


class ConversionError(GfsIngestionError):
    """Raised when grib2json fails or times out."""


class CacheStorageError(RuntimeError):
    """Raised when the dataset cache cannot be written or evicted."""


class InvalidTimestampError(ValueError):
    """Raised for a missing or unparseable query timestamp."""


class DataNotAvailableError(LookupError):
    """Raised when the resolved cycle is not cached yet."""


class DatasetState(str, enum.Enum):
    MISSING = "missing"
    FETCHING = "fetching"
    CONVERTING = "converting"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True, order=True)
class CycleIdentifier:
    """One GFS publication cycle. Orders chronologically."""

    day: date
    hour: int

    def __post_init__(self) -> None:
        if self.hour not in (0, 6, 12, 18):
            raise ValueError(f"Invalid cycle hour: {self.hour}")

    @classmethod
    def containing(cls, instant: datetime) -> "CycleIdentifier":
        instant = _as_utc(instant)
        return cls(instant.date(), (instant.hour // CYCLE_HOURS) * CYCLE_HOURS)

    @classmethod
    def parse(cls, value: str) -> "CycleIdentifier":
        if not re.fullmatch(r"\d{10}", value):
            raise ValueError(f"Invalid cycle timestamp: {value}")
        dt = datetime.strptime(value, "%Y%m%d%H")
        return cls(dt.date(), dt.hour)

    @property
    def start(self) -> datetime:
        return datetime(self.day.year, self.day.month, self.day.day, self.hour, tzinfo=timezone.utc)

    @property
    def timestamp(self) -> str:
        return f"{self.day.strftime('%Y%m%d')}{self.hour:02d}"

    @property
    def date_str(self) -> str:
        return self.day.strftime("%Y%m%d")

    @property
    def hour_str(self) -> str:
        return f"{self.hour:02d}"

    def shifted(self, cycles: int) -> "CycleIdentifier":
        return CycleIdentifier.containing(self.start + timedelta(hours=CYCLE_HOURS * cycles))

    def __str__(self) -> str:
        return self.timestamp


@dataclass(frozen=True)
class ResolvedCycle:
    cycle: CycleIdentifier
    publish_instant: datetime


def _safe_unlink(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError:
        pass


def _as_utc(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def parse_query_instant(value: str | None) -> datetime:
    raw = str(value or "").strip()
    if not raw:
        raise InvalidTimestampError("Provide a valid isoTimestamp query parameter to get wind forecast data.")
    try:
        return _as_utc(datetime.fromisoformat(raw.replace("Z", "+00:00")))
    except (ValueError, OverflowError) as exc:
        raise InvalidTimestampError(f"Invalid isoTimestamp: {raw}") from exc


def resolve_cycle(query_instant: datetime, publish_delay: timedelta = PUBLISH_DELAY) -> ResolvedCycle:
    """Return the latest cycle whose data should already be on NOMADS at ``query_instant``.

    An instant exactly at a publish boundary resolves to that boundary's cycle.
    """
    instant = _as_utc(query_instant)
    cycle = CycleIdentifier.containing(instant)
    publish_instant = cycle.start + publish_delay
    while publish_instant > instant:
        cycle = cycle.shifted(-1)
        publish_instant = cycle.start + publish_delay
    return ResolvedCycle(cycle=cycle, publish_instant=publish_instant)


def recent_cycles(
    now: datetime,
    count: int = KEEP_LAST_N_DATASETS,
    publish_delay: timedelta = PUBLISH_DELAY,
) -> List[CycleIdentifier]:
    """The ``count`` most recent published cycles relative to ``now``, newest first."""
    now = _as_utc(now)
    return [
        resolve_cycle(now - timedelta(hours=CYCLE_HOURS * k), publish_delay).cycle
        for k in range(max(0, count))
    ]


class DatasetCache:
    """Converted cycle datasets on disk, one ``<YYYYMMDDHH>.json`` file per ready cycle.

    Files are staged under ``.staging`` and published with ``os.replace``, so
    ``exists``/``read``/``list_cycles`` only ever see complete artifacts and
    ``evict_except`` never touches a file that is still being written.
    """

    def __init__(self, json_dir: Path | str) -> None:
        self._json_dir = Path(json_dir)
        self._staging_dir = self._json_dir / ".staging"
        self._json_dir.mkdir(parents=True, exist_ok=True)
        self._staging_dir.mkdir(parents=True, exist_ok=True)
        self._staging_seq = 0
        self._staging_guard = threading.Lock()

    @property
    def directory(self) -> Path:
        return self._json_dir

    def path_for(self, cycle: CycleIdentifier) -> Path:
        return self._json_dir / f"{cycle.timestamp}.json"

    def staging_path(self, cycle: CycleIdentifier) -> Path:
        with self._staging_guard:
            self._staging_seq += 1
            seq = self._staging_seq
        return self._staging_dir / f"{cycle.timestamp}.{os.getpid()}.{seq}.json.tmp"

    def exists(self, cycle: CycleIdentifier) -> bool:
        return self.path_for(cycle).is_file()

    def read_bytes(self, cycle: CycleIdentifier) -> bytes | None:
        try:
            return self.path_for(cycle).read_bytes()
        except FileNotFoundError:
            return None

    def read(self, cycle: CycleIdentifier) -> object | None:
        path = self.path_for(cycle)
        try:
            with path.open("r", encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError, json.JSONDecodeError):
            _safe_unlink(path)
            LOGGER.warning("Dropped corrupt dataset cache file path=%s", path)
            return None

    def write(self, cycle: CycleIdentifier, artifact: object) -> DatasetState:
        tmp_path = self.staging_path(cycle)
        try:
            with tmp_path.open("w", encoding="utf-8") as fh:
                json.dump(artifact, fh, separators=(",", ":"))
        except (OSError, TypeError, ValueError) as exc:
            _safe_unlink(tmp_path)
            raise CacheStorageError(f"Failed to stage dataset {cycle}: {exc}") from exc
        return self.write_file(cycle, tmp_path)

    def write_file(self, cycle: CycleIdentifier, staged_path: Path) -> DatasetState:
        """Atomically publish an already written artifact file for ``cycle``."""
        path = self.path_for(cycle)
        try:
            os.replace(staged_path, path)
        except OSError as exc:
            _safe_unlink(Path(staged_path))
            raise CacheStorageError(f"Failed to publish dataset {cycle}: {exc}") from exc
        LOGGER.debug("Saved dataset cache path=%s", path)
        return DatasetState.READY

    def list_cycles(self) -> Set[CycleIdentifier]:
        cycles: Set[CycleIdentifier] = set()
        for path in self._json_dir.glob("*.json"):
            m = _CYCLE_FILENAME_RE.match(path.name)
            if not m:
                continue
            try:
                cycles.add(CycleIdentifier.parse(m.group(1)))
            except ValueError:
                continue
        return cycles

    def evict_except(self, keep: Set[CycleIdentifier]) -> List[CycleIdentifier]:
        evicted: List[CycleIdentifier] = []
        failures: List[str] = []
        for cycle in sorted(self.list_cycles() - set(keep)):
            path = self.path_for(cycle)
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                LOGGER.warning("Failed to evict dataset path=%s: %s", path, exc)
                failures.append(cycle.timestamp)
                continue
            evicted.append(cycle)
            LOGGER.info("Evicted dataset %s", cycle)
        if failures:
            raise CacheStorageError(f"Failed to evict datasets: {', '.join(failures)}")
        return evicted

    def clear_staging(self) -> None:
        for path in self._staging_dir.glob("*.tmp"):
            _safe_unlink(path)


class GfsFilterFetcher:
    """Downloads the GFS 1.00 degree f000 subset through the NOMADS grib filter."""

    def __init__(
        self,
        url: str = GFS_FILTER_URL,
        timeout_seconds: float = FETCH_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ) -> None:
        self._url = url
        self._timeout_seconds = timeout_seconds
        self._session = session or requests.Session()

    @staticmethod
    def query_params(cycle: CycleIdentifier) -> Dict[str, object]:
        return {
            "file": f"gfs.t{cycle.hour_str}z.pgrb2.1p00.f000",
            "lev_10_m_above_ground": "on",
            "lev_surface": "on",
            "var_TMP": "on",
            "var_UGRD": "on",
            "var_VGRD": "on",
            "leftlon": 0,
            "rightlon": 360,
            "toplat": 90,
            "bottomlat": -90,
            "dir": f"/gfs.{cycle.date_str}/{cycle.hour_str}/atmos",
        }

    def fetch(self, cycle: CycleIdentifier) -> bytes:
        deadline = time.monotonic() + self._timeout_seconds
        try:
            response = self._session.get(
                self._url,
                params=self.query_params(cycle),
                timeout=(FETCH_CONNECT_TIMEOUT_SECONDS, self._timeout_seconds),
                stream=True,
            )
        except requests.RequestException as exc:
            raise UpstreamUnavailableError(f"Request for {cycle} failed: {exc}") from exc

        with response:
            if response.status_code == 404:
                raise UpstreamNotPublishedError(f"Data for {cycle} does not exist on the server")
            if response.status_code != 200:
                raise UpstreamUnavailableError(f"NOMADS returned HTTP {response.status_code} for {cycle}")
            chunks: List[bytes] = []
            try:
                for chunk in response.iter_content(chunk_size=1 << 16):
                    if time.monotonic() > deadline:
                        raise UpstreamUnavailableError(
                            f"Download of {cycle} exceeded {self._timeout_seconds:.0f}s"
                        )
                    chunks.append(chunk)
            except requests.RequestException as exc:
                raise UpstreamUnavailableError(f"Download of {cycle} failed: {exc}") from exc
        payload = b"".join(chunks)
        if not payload:
            raise UpstreamUnavailableError(f"Empty response for {cycle}")
        return payload


class Grib2JsonConverter:
    """Runs the grib2json command line tool (requires a Java runtime)."""

    def __init__(self, bin_path: str = GRIB2JSON_BIN_PATH, timeout_seconds: float = CONVERT_TIMEOUT_SECONDS) -> None:
        self._bin_path = bin_path
        self._timeout_seconds = timeout_seconds

    def convert(self, grib_path: Path, json_path: Path) -> None:
        cmd = [
            self._bin_path,
            "--data",
            "--output",
            str(json_path),
            "--names",
            "--compact",
            str(grib_path),
        ]
        LOGGER.info("Converting %s", grib_path)
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self._timeout_seconds)
        except subprocess.TimeoutExpired as exc:
            raise ConversionError(f"grib2json timed out after {self._timeout_seconds:.0f}s for {grib_path}") from exc
        except OSError as exc:
            raise ConversionError(f"Cannot run {self._bin_path}: {exc}") from exc
        if proc.returncode != 0:
            stderr = (proc.stderr or "").strip()
            raise ConversionError(f"grib2json exited {proc.returncode} for {grib_path}: {stderr[-500:]}")
        if not Path(json_path).is_file():
            raise ConversionError(f"grib2json produced no output for {grib_path}")


class FetchConvertPipeline:
    """Fetch, convert and publish one cycle; coalesces concurrent requests per cycle."""

    def __init__(
        self,
        cache: DatasetCache,
        fetcher,
        converter,
        grib_dir: Path | str,
    ) -> None:
        self._cache = cache
        self._fetcher = fetcher
        self._converter = converter
        self._grib_dir = Path(grib_dir)
        self._grib_dir.mkdir(parents=True, exist_ok=True)
        self._inflight_guard = threading.Lock()
        self._inflight: Dict[CycleIdentifier, Future] = {}
        self._states: Dict[CycleIdentifier, DatasetState] = {}

    def raw_path(self, cycle: CycleIdentifier) -> Path:
        return self._grib_dir / f"{cycle.timestamp}.f000"

    def state(self, cycle: CycleIdentifier) -> DatasetState:
        with self._inflight_guard:
            state = self._states.get(cycle)
        if state in (DatasetState.FETCHING, DatasetState.CONVERTING):
            return state
        if self._cache.exists(cycle):
            return DatasetState.READY
        return state or DatasetState.MISSING

    def inflight_cycles(self) -> List[CycleIdentifier]:
        with self._inflight_guard:
            return sorted(self._inflight)

    def forget_except(self, keep: Set[CycleIdentifier]) -> None:
        with self._inflight_guard:
            for cycle in [c for c in self._states if c not in keep and c not in self._inflight]:
                self._states.pop(cycle, None)

    def clear_raw(self) -> None:
        for path in self._grib_dir.glob("*.f000"):
            _safe_unlink(path)

    def ensure(self, cycle: CycleIdentifier) -> DatasetState:
        if self._cache.exists(cycle):
            return DatasetState.READY

        with self._inflight_guard:
            future = self._inflight.get(cycle)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[cycle] = future

        if not owner:
            LOGGER.debug("Waiting on in-flight attempt for %s", cycle)
            return future.result()

        outcome = DatasetState.FAILED
        try:
            outcome = self._run(cycle)
        except Exception:
            LOGGER.exception("Unexpected failure while ensuring %s", cycle)
        finally:
            with self._inflight_guard:
                self._inflight.pop(cycle, None)
                if outcome is DatasetState.READY:
                    self._states.pop(cycle, None)
                else:
                    self._states[cycle] = outcome
            future.set_result(outcome)
        return outcome

    def _set_state(self, cycle: CycleIdentifier, state: DatasetState) -> None:
        with self._inflight_guard:
            self._states[cycle] = state

    def _run(self, cycle: CycleIdentifier) -> DatasetState:
        # re-check once the attempt is owned
        if self._cache.exists(cycle):
            return DatasetState.READY

        LOGGER.info("Fetching grib data for %s", cycle)
        self._set_state(cycle, DatasetState.FETCHING)
        try:
            payload = self._fetcher.fetch(cycle)
        except UpstreamNotPublishedError as exc:
            LOGGER.info("%s", exc)
            return DatasetState.FAILED
        except UpstreamUnavailableError as exc:
            LOGGER.warning("Fetch failed for %s: %s", cycle, exc)
            return DatasetState.FAILED
        LOGGER.info("Data for %s has been fetched bytes=%d", cycle, len(payload))

        raw_path = self.raw_path(cycle)
        staged_path = self._cache.staging_path(cycle)
        try:
            try:
                raw_path.write_bytes(payload)
            except OSError as exc:
                LOGGER.warning("Failed to store raw grib for %s: %s", cycle, exc)
                return DatasetState.FAILED

            self._set_state(cycle, DatasetState.CONVERTING)
            try:
                self._converter.convert(raw_path, staged_path)
            except ConversionError as exc:
                LOGGER.warning("Conversion failed for %s: %s", cycle, exc)
                return DatasetState.FAILED

            try:
                state = self._cache.write_file(cycle, staged_path)
            except CacheStorageError as exc:
                LOGGER.warning("%s", exc)
                return DatasetState.FAILED
            LOGGER.info("Converted %s to %s", raw_path, self._cache.path_for(cycle))
            return state
        finally:
            _safe_unlink(raw_path)
            _safe_unlink(staged_path)


class RefreshScheduler:
    """Background loop keeping the last ``keep_count`` cycles cached."""

    def __init__(
        self,
        cache: DatasetCache,
        pipeline: FetchConvertPipeline,
        interval_seconds: float = REFRESH_INTERVAL_SECONDS,
        keep_count: int = KEEP_LAST_N_DATASETS,
        publish_delay: timedelta = PUBLISH_DELAY,
        workers: int = BACKGROUND_FETCH_WORKERS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._cache = cache
        self._pipeline = pipeline
        self._interval_seconds = interval_seconds
        self._keep_count = keep_count
        self._publish_delay = publish_delay
        self._workers = max(1, workers)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._guard = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._last_refreshed_at: datetime | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def last_refreshed_at(self) -> datetime | None:
        return self._last_refreshed_at

    def start(self) -> None:
        with self._guard:
            if self.running:
                if not self._stop.is_set():
                    return
                # a stopped loop still finishing its last pass
                self._thread.join()
            self._stop.clear()
            self._executor = ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="cycle-fetch")
            self._thread = threading.Thread(target=self._loop, name="gfs-refresh", daemon=True)
            self._thread.start()
        LOGGER.info(
            "Started refresh scheduler interval=%ss keep=%d", self._interval_seconds, self._keep_count
        )

    def stop(self, timeout: float | None = None) -> None:
        with self._guard:
            self._stop.set()
            thread = self._thread
            executor = self._executor
        if thread is not None and timeout is not None:
            thread.join(timeout)
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=False)
        LOGGER.info("Stopped refresh scheduler")

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.refresh_once()
            except Exception:
                LOGGER.exception("Refresh pass failed")
            self._stop.wait(self._interval_seconds)

    def refresh_once(self) -> Dict[str, DatasetState]:
        keep = recent_cycles(self._clock(), self._keep_count, self._publish_delay)
        missing = [cycle for cycle in keep if not self._cache.exists(cycle)]
        results: Dict[str, DatasetState] = {cycle.timestamp: DatasetState.READY for cycle in keep}
        if missing:
            LOGGER.info("Cycles due to be fetched: %s", ", ".join(c.timestamp for c in missing))
            for cycle, outcome in self._ensure_all(missing):
                results[cycle.timestamp] = outcome

        try:
            self._cache.evict_except(set(keep))
        except CacheStorageError as exc:
            LOGGER.warning("%s", exc)
        self._pipeline.forget_except(set(keep))
        self._last_refreshed_at = datetime.now(timezone.utc)
        return results

    def _ensure_all(self, cycles: List[CycleIdentifier]) -> List[Tuple[CycleIdentifier, DatasetState]]:
        executor = self._executor
        if executor is None or self._stop.is_set():
            return [(cycle, self._pipeline.ensure(cycle)) for cycle in cycles]
        futures = {cycle: executor.submit(self._pipeline.ensure, cycle) for cycle in cycles}
        wait(list(futures.values()))
        out: List[Tuple[CycleIdentifier, DatasetState]] = []
        for cycle, future in futures.items():
            try:
                out.append((cycle, future.result()))
            except Exception:
                LOGGER.exception("Ensure failed for %s", cycle)
                out.append((cycle, DatasetState.FAILED))
        return out


class QueryService:
    """Answers "which cached dataset is valid at T" without ever fetching."""

    def __init__(self, cache: DatasetCache, publish_delay: timedelta = PUBLISH_DELAY) -> None:
        self._cache = cache
        self._publish_delay = publish_delay

    def resolve(self, requested: str | None) -> ResolvedCycle:
        instant = parse_query_instant(requested)
        try:
            return resolve_cycle(instant, self._publish_delay)
        except OverflowError as exc:
            raise InvalidTimestampError(f"isoTimestamp out of range: {requested}") from exc

    def query_timestamp(self, requested: str | None) -> CycleIdentifier:
        cycle = self.resolve(requested).cycle
        if not self._cache.exists(cycle):
            raise DataNotAvailableError("There's no data for the specified time.")
        return cycle

    def query_nearest_bytes(self, requested: str | None) -> Tuple[CycleIdentifier, bytes]:
        """Like ``query_nearest`` but returns the stored JSON document unparsed."""
        cycle = self.resolve(requested).cycle
        raw = self._cache.read_bytes(cycle)
        if raw is None:
            raise DataNotAvailableError("There's no data for the specified time.")
        return cycle, raw

    def query_nearest(self, requested: str | None) -> Tuple[CycleIdentifier, object]:
        cycle = self.resolve(requested).cycle
        artifact = self._cache.read(cycle)
        if artifact is None:
            raise DataNotAvailableError("There's no data for the specified time.")
        return cycle, artifact


def build_services(data_dir: Path | str = GFS_DATA_DIR) -> Tuple[DatasetCache, FetchConvertPipeline, RefreshScheduler, QueryService]:
    data_dir = Path(data_dir)
    cache = DatasetCache(data_dir / "json")
    pipeline = FetchConvertPipeline(cache, GfsFilterFetcher(), Grib2JsonConverter(), data_dir / "grib")
    # Leftovers from a crashed process are never valid inputs or artifacts.
    cache.clear_staging()
    pipeline.clear_raw()
    scheduler = RefreshScheduler(cache, pipeline)
    return cache, pipeline, scheduler, QueryService(cache)
