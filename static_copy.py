#!/usr/bin/env python3
"""Download a static copy of a website into a prototype's assets directory.

Phases:
A) Fetch the root URL recursively into a scratch directory with wget.
B) Turn extensionless pages into <page>/index.html, rewrite root-relative
   href/src/action references under the public mount path, and collect the
   file-like references each page makes.
C) Fetch referenced files that the recursive crawl did not pick up.
D) Move the scratch tree into the assets directory.

The copy is then linked from the prototype homepage.
"""

from __future__ import annotations

import argparse
import asyncio
import base64
import enum
import getpass
import logging
import os
import re
import shutil
import tempfile
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

import aiohttp
import yaml

ENVIRONMENT_EXIT_CODE = 10
SCRATCH_EXIT_CODE = 11
MISSING_TOOL_EXIT_CODE = 127
RECENT_LINES = 5
DEFAULT_SCRATCH_ROOT = str(Path(tempfile.gettempdir()) / "prototype-static-copy")

REWRITE_RE = re.compile(r'(href|src|action)(="?)/')
REFERENCE_RE = re.compile(r'(?:href|src|action)="(/[^"]+)"')
ERROR_URL_RE = re.compile(r"https?://\S+")
ENDBLOCK_RE = re.compile(r"({%\s*endblock\s*%})")


@dataclass(slots=True)
class Config:
    """Runtime configuration, optionally loaded from a YAML file."""

    assets_dir: str = "app/assets"
    homepage: str = "app/views/index.html"
    public_prefix: str = "/public"
    scratch_root: str = DEFAULT_SCRATCH_ROOT
    fetch_command: str = "wget"
    timeout_sec: float = 1
    tries: int = 5
    wait_sec: float = 0.3
    waitretry_sec: float = 2
    partial_exit_code: int = 3
    poll_interval_sec: float = 2.0
    gap_delay_sec: float = 0.3
    probe: bool = True
    probe_timeout_sec: float = 10
    probe_retries: int = 2
    log_everything: bool = False


@dataclass(slots=True)
class CopyDetails:
    """What to copy and how to authenticate against it."""

    name: str
    url: str
    username: str | None = None
    password: str | None = None


class StaticCopyError(Exception):
    """Base class for errors raised while making a static copy."""


class EnvironmentCheckError(StaticCopyError):
    """The command was not run from inside a prototype."""


class ScratchUnreadableError(StaticCopyError):
    """A directory of the scratch tree could not be listed."""


class EmptyMirrorError(StaticCopyError):
    """The root fetch did not produce anything to work with."""


class FinalizeError(StaticCopyError):
    """The reconciled tree could not be moved to its destination."""


class FetchError(StaticCopyError):
    """The fetch tool exited with a code that is neither success nor partial success."""

    def __init__(self, returncode: int, argv: list[str], cwd: Path, recent: list[str]) -> None:
        self.returncode = returncode
        self.argv = argv
        self.cwd = cwd
        self.recent = recent
        super().__init__(
            f"non-zero exit status [{returncode}] for command [{describe_command(argv)}] in dir [{cwd}]"
        )


@dataclass
class ErrorLedger:
    """The last few fetch-tool diagnostics plus every distinct URL seen in them."""

    recent: deque[str] = field(default_factory=lambda: deque(maxlen=RECENT_LINES))
    urls: dict[str, None] = field(default_factory=dict)

    def record(self, line: str) -> None:
        self.recent.append(line)
        match = ERROR_URL_RE.search(line)
        if match:
            self.urls.setdefault(match.group(0), None)


class Stage(enum.Enum):
    FETCHING_ROOT = "fetching_root"
    SCANNING = "scanning"
    RESOLVING_GAP = "resolving_gap"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ReconcileResult:
    """Outcome of one run, reported to the operator at the end."""

    stage: Stage = Stage.FETCHING_ROOT
    destination: Path | None = None
    pages: int = 0
    references: list[str] = field(default_factory=list)
    gap: list[str] = field(default_factory=list)
    failed_gap: list[str] = field(default_factory=list)
    error_urls: list[str] = field(default_factory=list)
    recent: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.stage is Stage.DONE


class MirrorContext:
    """State shared by the phases of one run."""

    def __init__(self, config: Config, details: CopyDetails, scratch: Path, destination: Path) -> None:
        self.config = config
        self.details = details
        self.scratch = scratch
        self.destination = destination
        self.ledger = ErrorLedger()
        self.references: dict[str, None] = {}
        self.result = ReconcileResult()
        self._download_dir: Path | None = None

    @property
    def public_path(self) -> str:
        """Mount path the copy is served from, e.g. ``/public/<name>``."""
        return f"{self.config.public_prefix.rstrip('/')}/{self.details.name}"

    @property
    def download_dir(self) -> Path:
        """The host directory the root fetch created inside the scratch directory."""
        if self._download_dir is None:
            self._download_dir = locate_download_dir(self.scratch)
        return self._download_dir

    def enter(self, stage: Stage) -> None:
        logging.info("Stage: %s", stage.value)
        self.result.stage = stage


# -------------------- fetch tool --------------------


def auth_args(username: str | None, password: str | None) -> list[str]:
    """Build wget's basic-auth arguments for whichever credentials are present."""
    args: list[str] = []
    if username or password:
        args.append("--auth-no-challenge")
    if username:
        args.append(f"--user={username}")
    if password:
        args.append(f"--password={password}")
    return args


def root_fetch_args(config: Config, details: CopyDetails) -> list[str]:
    """Arguments for the recursive fetch of the root URL."""
    return [
        "-r",
        f"--timeout={config.timeout_sec:g}",
        f"--tries={config.tries}",
        f"--wait={config.wait_sec:g}",
        f"--waitretry={config.waitretry_sec:g}",
        "-e",
        "robots=off",
        *auth_args(details.username, details.password),
        details.url,
    ]


def gap_fetch_args(details: CopyDetails, url: str) -> list[str]:
    """Arguments for fetching a single missing file into its host directory."""
    return ["--force-directories", *auth_args(details.username, details.password), url]


def describe_command(argv: list[str]) -> str:
    """Render an argument vector for logs, hiding the password."""
    shown = ["--password=****" if arg.startswith("--password=") else arg for arg in argv]
    return " ".join(shown)


async def run_fetch(
    config: Config,
    args: list[str],
    cwd: Path,
    ledger: ErrorLedger | None = None,
) -> int:
    """Run the fetch tool in ``cwd``. Return its exit code or raise FetchError.

    Exit code 0 and ``config.partial_exit_code`` (some files could not be
    downloaded) both count as success. Every stderr line is recorded in
    ``ledger``; the last few lines of this invocation are attached to the
    FetchError on failure.
    """
    ledger = ledger if ledger is not None else ErrorLedger()
    argv = [config.fetch_command, *args]
    command = describe_command(argv)
    tail: deque[str] = deque(maxlen=RECENT_LINES)
    logging.debug("Running command: %s in dir %s", command, cwd)

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE if config.log_everything else asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        raise FetchError(
            MISSING_TOOL_EXIT_CODE, argv, cwd, [f"{config.fetch_command}: command not found"]
        ) from None

    async def read_stderr(stream: asyncio.StreamReader) -> None:
        async for raw in stream:
            line = raw.decode("utf-8", "replace").rstrip()
            if not line:
                continue
            tail.append(line)
            ledger.record(line)

    async def read_stdout(stream: asyncio.StreamReader) -> None:
        async for raw in stream:
            logging.info("%s", raw.decode("utf-8", "replace").rstrip())

    readers = []
    if proc.stderr is not None:
        readers.append(read_stderr(proc.stderr))
    if proc.stdout is not None:
        readers.append(read_stdout(proc.stdout))
    await asyncio.gather(*readers)
    returncode = await proc.wait()

    if returncode in (0, config.partial_exit_code):
        if returncode:
            logging.warning("Command finished with some files not downloaded (exit %s): %s", returncode, command)
        logging.info("successfully ran command [%s] in dir [%s]", command, cwd)
        return returncode

    if config.log_everything:
        logging.error("%s", "\n".join(tail))
    raise FetchError(returncode, argv, cwd, list(tail))


def basic_auth_headers(details: CopyDetails) -> dict[str, str]:
    """``Authorization`` header for whichever credentials are present."""
    if not (details.username or details.password):
        return {}
    token = f"{details.username or ''}:{details.password or ''}".encode("utf-8")
    return {"Authorization": "Basic " + base64.b64encode(token).decode("ascii")}


async def probe_root(config: Config, details: CopyDetails) -> int:
    """Best-effort GET of the root URL before mirroring. Return HTTP status or -1."""
    timeout = aiohttp.ClientTimeout(total=config.probe_timeout_sec)

    async with aiohttp.ClientSession(headers=basic_auth_headers(details), timeout=timeout) as session:
        for attempt in range(config.probe_retries + 1):
            try:
                async with session.get(details.url) as resp:
                    status = resp.status
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                if attempt == config.probe_retries:
                    logging.warning("Could not reach %s (%s); trying the mirror anyway", details.url, exc)
                    return -1
                await asyncio.sleep((2**attempt) * 0.5)
                continue

            if status >= 500 and attempt < config.probe_retries:
                await asyncio.sleep((2**attempt) * 0.5)
                continue
            if status in (401, 403):
                logging.warning("HTTP %s for %s; check the username and password", status, details.url)
            elif status >= 400:
                logging.warning("HTTP %s for %s", status, details.url)
            else:
                logging.info("HTTP %s for %s", status, details.url)
            return status
    return -1


# -------------------- page transforms --------------------


def is_page_name(name: str) -> bool:
    """True for extensionless names and names ending in ``.html``."""
    parts = name.split(".")
    return len(parts) == 1 or parts[-1] == "html"


def is_file_like(path: str) -> bool:
    """True when the last path segment has a dot, i.e. looks like a file rather than a route."""
    return path.rfind(".") > path.rfind("/")


def normalize_page(path: Path) -> Path:
    """Move an extensionless page to ``<path>/index.html``. Return the document path.

    ``.html`` files and names with any other extension are left where they are.
    """
    if path.name.endswith(".html") or not is_page_name(path.name):
        return path
    staging = path.with_name(f"{path.name}.tmp")
    staging.mkdir()
    try:
        path.rename(staging / "index.html")
    except OSError:
        staging.rmdir()
        raise
    staging.rename(path)
    return path / "index.html"


def rewrite_references(text: str, mount: str) -> str:
    """Prefix every root-relative href/src/action value with ``mount``."""
    mount = mount.rstrip("/")
    return REWRITE_RE.sub(lambda m: f"{m.group(1)}{m.group(2)}{mount}/", text)


def discover_references(text: str) -> list[str]:
    """Return distinct root-relative file references, query strings stripped, in page order."""
    found: dict[str, None] = {}
    for match in REFERENCE_RE.finditer(text):
        path = match.group(1).split("?", 1)[0]
        if is_file_like(path):
            found.setdefault(path, None)
    return list(found)


def list_pages(directory: Path) -> list[Path]:
    """Recursively list page-like files under ``directory``."""
    try:
        with os.scandir(directory) as it:
            entries = list(it)
    except OSError as exc:
        raise ScratchUnreadableError(f"Couldn't read dir {directory}") from exc

    pages: list[Path] = []
    for entry in entries:
        if entry.is_dir(follow_symlinks=False):
            pages.extend(list_pages(Path(entry.path)))
        elif is_page_name(entry.name):
            pages.append(Path(entry.path))
    return pages


def count_pages(directory: Path) -> int:
    """Count page-like files, ignoring entries that vanish or cannot be read."""
    return sum(
        1 for _, _, files in os.walk(directory) for name in files if is_page_name(name)
    )


def locate_download_dir(scratch: Path) -> Path:
    """Return the first entry the root fetch created in the scratch directory."""
    try:
        entries = sorted(os.listdir(scratch))
    except OSError as exc:
        raise ScratchUnreadableError(f"Couldn't read dir {scratch}") from exc
    if not entries:
        raise EmptyMirrorError(f"Nothing was downloaded into {scratch}")
    return scratch / entries[0]


def find_gap(references: Iterable[str], root: Path) -> list[str]:
    """Return the references that do not exist under ``root``."""
    return [ref for ref in references if not (root / ref.lstrip("/")).exists()]


def gap_url(base_url: str, path: str) -> str:
    """Join the site URL and a root-relative path, collapsing repeated slashes."""
    return re.sub(r"/+", "/", base_url + path).replace(":/", "://", 1)


# -------------------- phases --------------------


async def poll_progress(ctx: MirrorContext) -> None:
    """Log a snapshot of the scratch tree every poll interval until cancelled."""
    while True:
        await asyncio.sleep(ctx.config.poll_interval_sec)
        logging.info(
            "Progress: pages=%s failures=%s", count_pages(ctx.scratch), len(ctx.ledger.urls)
        )


async def phase_a_fetch_root(ctx: MirrorContext) -> None:
    """Phase A: recursive fetch of the root URL. Failures are logged, never fatal."""
    ctx.scratch.mkdir(parents=True, exist_ok=True)
    args = root_fetch_args(ctx.config, ctx.details)
    logging.info("Running command: %s", describe_command([ctx.config.fetch_command, *args]))
    logging.info("This can take some time, feel free to make yourself a coffee while you wait.")

    poller = asyncio.create_task(poll_progress(ctx))
    try:
        await run_fetch(ctx.config, args, ctx.scratch, ctx.ledger)
    except FetchError as exc:
        logging.warning("%s", exc)
        logging.warning("Continuing anyway")
    finally:
        poller.cancel()
        try:
            await poller
        except asyncio.CancelledError:
            pass


def phase_b_scan(ctx: MirrorContext) -> int:
    """Phase B: normalize and rewrite every page, collecting file references.

    Pages are popped from the end of a depth-first listing, so the order in
    which they are processed is not stable across runs.
    """
    pages = list_pages(ctx.download_dir)
    processed = 0
    while pages:
        document = normalize_page(pages.pop())
        # bytes in and out so line endings and non-UTF-8 content survive untouched
        original = document.read_bytes().decode("utf-8", "surrogateescape")
        rewritten = rewrite_references(original, ctx.public_path)
        document.write_bytes(rewritten.encode("utf-8", "surrogateescape"))
        for ref in discover_references(original):
            ctx.references.setdefault(ref, None)
        processed += 1

    ctx.result.pages = processed
    ctx.result.references = list(ctx.references)
    logging.info("Rewrote %s pages; found %s file references", processed, len(ctx.references))
    return processed


async def phase_c_resolve_gap(ctx: MirrorContext) -> list[str]:
    """Phase C: fetch missing referenced files one at a time. Failures are skipped."""
    gap = find_gap(ctx.references, ctx.download_dir)
    ctx.result.gap = gap
    logging.info("Additional downloads: %s of %s references are missing", len(gap), len(ctx.references))

    for index, path in enumerate(gap):
        url = gap_url(ctx.details.url, path)
        if index and ctx.config.gap_delay_sec > 0:
            await asyncio.sleep(ctx.config.gap_delay_sec)
        try:
            await run_fetch(ctx.config, gap_fetch_args(ctx.details, url), ctx.scratch, ctx.ledger)
        except FetchError as exc:
            ctx.result.failed_gap.append(path)
            logging.warning("Skip %s: %s", url, exc)
    return gap


def phase_d_finalize(ctx: MirrorContext) -> Path:
    """Phase D: move the reconciled tree to its destination."""
    source = ctx.download_dir
    destination = ctx.destination
    if destination.exists():
        raise FinalizeError(f"Destination already exists: {destination}")
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(source), str(destination))
    except OSError as exc:
        raise FinalizeError(f"Could not move {source} to {destination}: {exc}") from exc

    try:
        ctx.scratch.rmdir()
    except OSError:
        logging.debug("Leaving scratch directory in place: %s", ctx.scratch)
    ctx.result.destination = destination
    logging.info("Copy written to %s", destination)
    return destination


async def reconcile(ctx: MirrorContext) -> ReconcileResult:
    """Run all phases. An unreadable scratch directory is re-raised; other errors fail the run."""
    result = ctx.result
    try:
        ctx.enter(Stage.FETCHING_ROOT)
        if ctx.config.probe:
            await probe_root(ctx.config, ctx.details)
        await phase_a_fetch_root(ctx)
        ctx.enter(Stage.SCANNING)
        phase_b_scan(ctx)
        ctx.enter(Stage.RESOLVING_GAP)
        await phase_c_resolve_gap(ctx)
        ctx.enter(Stage.FINALIZING)
        phase_d_finalize(ctx)
        ctx.enter(Stage.DONE)
    except ScratchUnreadableError as exc:
        result.error = str(exc)
        ctx.enter(Stage.FAILED)
        raise
    except (StaticCopyError, OSError) as exc:
        result.error = str(exc)
        logging.error("Static copy failed: %s", exc)
        ctx.enter(Stage.FAILED)
    finally:
        result.error_urls = list(ctx.ledger.urls)
        result.recent = list(ctx.ledger.recent)
    return result


def report(result: ReconcileResult) -> None:
    """Log the end-of-run summary and the URLs the fetch tool complained about."""
    logging.info(
        "Summary: stage=%s pages=%s references=%s missing=%s failed=%s destination=%s",
        result.stage.value,
        result.pages,
        len(result.references),
        len(result.gap),
        len(result.failed_gap),
        result.destination,
    )
    for path in result.failed_gap:
        logging.warning("Could not download %s", path)
    if result.error_urls:
        logging.warning("The fetch tool reported problems with %s URLs:", len(result.error_urls))
        for url in result.error_urls:
            logging.warning("- %s", url)
    if not result.ok and result.recent:
        logging.error("Last fetch tool output:\n%s", "\n".join(result.recent))


# -------------------- prototype glue --------------------


def check_project_root(cwd: Path, config: Config) -> None:
    """Raise EnvironmentCheckError unless ``cwd`` looks like a prototype."""
    if not (cwd / config.assets_dir).is_dir():
        raise EnvironmentCheckError(
            "It looks like you're not in a prototype, please run this command from inside a prototype"
        )


def get_or_request_details(values: list[str | None]) -> CopyDetails:
    """Take name, url, username, password from the command line, or ask for them."""
    name, url, username, password = (list(values) + [None] * 4)[:4]
    if not name:
        name = input("We're going to download a static copy of a prototype, what name do you want to use for this copy? ")
        url = input("What's the URL (address) of the prototype you want to copy? ")
        username = input("If it needs a username to log in, what is that username? ")
        password = getpass.getpass("If it needs a password to log in what is that password? ")
        logging.info(
            "name=%s url=%s username=%s password=%s", name, url, username or "", "****" if password else ""
        )

    name = (name or "").strip()
    url = (url or "").strip()
    if not name or "/" in name or name in (".", ".."):
        raise ValueError(f"invalid copy name: {name!r}")
    if "://" not in url:
        raise ValueError(f"URL must include a scheme, e.g. https://: {url!r}")
    return CopyDetails(name=name, url=url, username=username or None, password=password or None)


def add_link_to_homepage(homepage: Path, public_path: str, url: str) -> None:
    """Insert a link to the copy just before the homepage's first ``{% endblock %}``."""
    text = homepage.read_text(encoding="utf-8")
    if not ENDBLOCK_RE.search(text):
        raise ValueError(f"no endblock marker in {homepage}")
    link = f'<p class="govuk-body"><a href="{public_path}">Downloaded copy of {url}.</a></p>'
    homepage.write_text(ENDBLOCK_RE.sub(lambda m: link + m.group(1), text, count=1), encoding="utf-8")


def load_config(config_path: Path) -> Config:
    """Load a YAML config file and apply defaults for missing keys."""
    data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError("config file must be a mapping")

    defaults = Config()
    return Config(
        assets_dir=str(data.get("assets_dir", defaults.assets_dir)),
        homepage=str(data.get("homepage", defaults.homepage)),
        public_prefix=str(data.get("public_prefix", defaults.public_prefix)).rstrip("/"),
        scratch_root=str(data.get("scratch_root", defaults.scratch_root)),
        fetch_command=str(data.get("fetch_command", defaults.fetch_command)),
        timeout_sec=float(data.get("timeout_sec", defaults.timeout_sec)),
        tries=int(data.get("tries", defaults.tries)),
        wait_sec=float(data.get("wait_sec", defaults.wait_sec)),
        waitretry_sec=float(data.get("waitretry_sec", defaults.waitretry_sec)),
        partial_exit_code=int(data.get("partial_exit_code", defaults.partial_exit_code)),
        poll_interval_sec=float(data.get("poll_interval_sec", defaults.poll_interval_sec)),
        gap_delay_sec=float(data.get("gap_delay_sec", defaults.gap_delay_sec)),
        probe=bool(data.get("probe", defaults.probe)),
        probe_timeout_sec=float(data.get("probe_timeout_sec", defaults.probe_timeout_sec)),
        probe_retries=int(data.get("probe_retries", defaults.probe_retries)),
        log_everything=bool(data.get("log_everything", defaults.log_everything)),
    )


async def run(config: Config, details: CopyDetails, cwd: Path) -> int:
    """Make the copy and link it from the homepage. Return process exit code."""
    scratch = Path(config.scratch_root) / str(int(time.time() * 1000))
    ctx = MirrorContext(config, details, scratch, cwd / config.assets_dir / details.name)
    logging.info("Starting static copy of %s as %s", details.url, ctx.public_path)

    try:
        result = await reconcile(ctx)
    except ScratchUnreadableError as exc:
        logging.error("%s", exc)
        return SCRATCH_EXIT_CODE

    report(result)
    if not result.ok:
        return 1

    try:
        add_link_to_homepage(cwd / config.homepage, ctx.public_path, details.url)
    except (OSError, ValueError) as exc:
        logging.debug("Homepage link not added: %s", exc)
        logging.info("Finished.")
    else:
        logging.info("Finished.  Link added to your prototype homepage.")
    return 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """CLI options."""
    parser = argparse.ArgumentParser(description="Download a static copy of a website into this prototype")
    parser.add_argument("name", nargs="?", help="Name for the copy, used in /public/<name>")
    parser.add_argument("url", nargs="?", help="URL of the site to copy")
    parser.add_argument("username", nargs="?", help="Username, if the site needs one")
    parser.add_argument("password", nargs="?", help="Password, if the site needs one")
    parser.add_argument("--config", help="Path to config YAML file")
    parser.add_argument("--verbose", action="store_true", help="Log debug output")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    config = Config()
    if args.config:
        config_path = Path(args.config)
        if not config_path.exists():
            raise SystemExit(f"config file not found: {config_path}")
        config = load_config(config_path)
    if os.environ.get("LOG_EVERYTHING") == "true":
        config.log_everything = True

    cwd = Path.cwd()
    try:
        check_project_root(cwd, config)
    except EnvironmentCheckError as exc:
        logging.error("%s", exc)
        raise SystemExit(ENVIRONMENT_EXIT_CODE)

    try:
        details = get_or_request_details([args.name, args.url, args.username, args.password])
    except ValueError as exc:
        raise SystemExit(str(exc))
    raise SystemExit(asyncio.run(run(config, details, cwd)))


if __name__ == "__main__":
    main()
