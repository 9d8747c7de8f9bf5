from __future__ import annotations

import asyncio
import ipaddress
import logging
import os
import re
import shutil
from collections.abc import Iterator, Mapping
from contextlib import asynccontextmanager
from fnmatch import fnmatch
from pathlib import Path
from typing import Literal

import aiofiles
import aiofiles.os
import httpx
from dotenv import find_dotenv, load_dotenv
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field, StrictStr

APP_VERSION = "0.1.0"
DEFAULT_DOWNLOAD_TIMEOUT_SECONDS = 25.0
DEFAULT_PORT = 8034
SCRIPT_EXTENSIONS = frozenset({".bat", ".cmd", ".sh"})
REQUIRED_ENV_VARS = ("TOKENS", "ALLOWED_DIRS", "ALLOWED_FILE_PATTERNS")
TRUTHY_VALUES = ("true", "1")

_DRIVE_SEGMENT_RE = re.compile(r"(?:^|[\\/])[A-Za-z]:(?:[\\/]|$)")

logger = logging.getLogger("hostops")


class ConfigError(RuntimeError):
    pass


class TokenRejected(Exception):
    pass


class OperationError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidRequest(OperationError):
    status_code = 400


class MissingPath(InvalidRequest):
    def __init__(self) -> None:
        super().__init__("Path required")


class PolicyError(OperationError):
    status_code = 403


class PathRejected(PolicyError):
    def __init__(self) -> None:
        super().__init__("Path not allowed")


class PatternRejected(PolicyError):
    def __init__(self) -> None:
        super().__init__("File type not allowed")


class ExecutionError(OperationError):
    status_code = 500


class AppConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    tokens: frozenset[str] = Field(min_length=1)
    allowed_dirs: tuple[str, ...] = Field(min_length=1)
    allowed_file_patterns: tuple[str, ...] = Field(min_length=1)
    log_requests: bool = False
    log_created_files: bool = False
    download_timeout_seconds: float = Field(
        default=DEFAULT_DOWNLOAD_TIMEOUT_SECONDS, gt=0
    )


class DownloadRequest(BaseModel):
    url: StrictStr | None = None
    path: StrictStr | None = None


class DeleteRequest(BaseModel):
    path: StrictStr | None = None
    pattern: StrictStr | None = None


class RunRequest(BaseModel):
    path: StrictStr | None = None


class ValidatedPath(BaseModel):
    model_config = ConfigDict(frozen=True)

    raw: str
    resolved: str
    target: str


class ScriptResult(BaseModel):
    success: bool = True
    stdout: str
    stderr: str


def split_env_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(";") if item.strip()]


def env_flag(value: str | None) -> bool:
    return (value or "").strip().lower() in TRUTHY_VALUES


def load_config_from_env(environ: Mapping[str, str] | None = None) -> AppConfig:
    """Build the immutable service configuration from environment variables.

    Lists are ``;``-separated. Raises ``ConfigError`` naming every required
    variable that is missing or has no usable entries.
    """
    env = os.environ if environ is None else environ
    lists = {name: split_env_list(env.get(name)) for name in REQUIRED_ENV_VARS}
    missing = [name for name, values in lists.items() if not values]
    if missing:
        plural = "" if len(missing) == 1 else "s"
        raise ConfigError(
            f"Missing required environment variable{plural}: {', '.join(missing)}"
        )
    timeout_raw = env.get("DOWNLOAD_TIMEOUT_SECONDS", "").strip()
    try:
        timeout = (
            float(timeout_raw) if timeout_raw else DEFAULT_DOWNLOAD_TIMEOUT_SECONDS
        )
    except ValueError as exc:
        raise ConfigError(
            f"DOWNLOAD_TIMEOUT_SECONDS must be a number, got {timeout_raw!r}"
        ) from exc
    return AppConfig(
        tokens=lists["TOKENS"],
        allowed_dirs=lists["ALLOWED_DIRS"],
        allowed_file_patterns=lists["ALLOWED_FILE_PATTERNS"],
        log_requests=env_flag(env.get("LOG_REQUESTS")),
        log_created_files=env_flag(env.get("LOG_CREATED_FILES")),
        download_timeout_seconds=timeout,
    )


def setup_logging(level: str | int | None = None, log_file: str | None = None) -> None:
    if level is None:
        level = os.environ.get("LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(level)
    if logger.handlers:
        return
    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%dT%H:%M:%S%z"
    )
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    log_file = log_file or os.environ.get("LOG_FILE")
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)


def append_backend_log(level: str, message: str) -> None:
    logger.log(getattr(logging, level.upper(), logging.INFO), message)


current_config: AppConfig | None = None
http_transport: httpx.AsyncBaseTransport | None = None
pending_downloads: set[asyncio.Task] = set()
detached_downloads: set[asyncio.Task] = set()


def load_env_file() -> bool:
    # Variables already set in the process environment win over the file.
    return load_dotenv(find_dotenv(usecwd=True), override=False)


def reload_config() -> AppConfig:
    global current_config
    current_config = load_config_from_env()
    return current_config


def get_config() -> AppConfig:
    if current_config is None:
        raise ConfigError("Configuration has not been loaded")
    return current_config


async def drain_pending_downloads() -> None:
    while pending_downloads:
        await asyncio.gather(*list(pending_downloads), return_exceptions=True)


@asynccontextmanager
async def lifespan(_: FastAPI):
    load_env_file()
    setup_logging()
    config = reload_config()
    append_backend_log(
        "info",
        f"hostops {APP_VERSION} ready tokens={len(config.tokens)} "
        f"allowed_dirs={list(config.allowed_dirs)}",
    )
    yield
    if pending_downloads:
        append_backend_log(
            "info", f"waiting for {len(pending_downloads)} background download(s)"
        )
    await drain_pending_downloads()


app = FastAPI(title="hostops", version=APP_VERSION, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TokenRejected)
async def handle_token_rejected(_: Request, __: TokenRejected) -> Response:
    return Response(status_code=404)


@app.exception_handler(OperationError)
async def handle_operation_error(_: Request, exc: OperationError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def handle_validation_error(
    _: Request, __: RequestValidationError
) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "Invalid request body"})


def is_authorized(token: str | None, tokens: frozenset[str]) -> bool:
    return isinstance(token, str) and token in tokens


def require_token(token: str | None = Query(default=None)) -> None:
    if not is_authorized(token, get_config().tokens):
        raise TokenRejected()


def client_address(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def truncate_ip(address: str) -> str:
    """Mask the host part of an address for log lines.

    IPv4 keeps the /24 network, IPv6 the /48. Unparseable values pass through.
    """
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return address
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    if isinstance(ip, ipaddress.IPv4Address):
        return ".".join(str(ip).split(".")[:3] + ["x"])
    groups = ip.exploded.split(":")[:3]
    return ":".join(group.lstrip("0") or "0" for group in groups) + "::x"


def format_size(byte_count: int) -> str:
    kib = round(byte_count / 1024, 2)
    mib = round(byte_count / (1024 * 1024), 2)
    return f"({mib} MiB)" if mib > 0.5 else f"({kib} KiB)"


def split_top_level(text: str) -> list[str]:
    parts: list[str] = []
    depth = 0
    current = ""
    for char in text:
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
        elif char == "," and depth == 0:
            parts.append(current)
            current = ""
            continue
        current += char
    parts.append(current)
    return parts


def expand_braces(pattern: str) -> list[str]:
    """Expand ``{a,b}`` alternations into plain fnmatch patterns.

    ``*.{zip,7z}`` becomes ``["*.zip", "*.7z"]``. Groups without a comma are
    kept literally.
    """
    depth = 0
    start = -1
    for index, char in enumerate(pattern):
        if char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth:
            depth -= 1
            if depth:
                continue
            options = split_top_level(pattern[start + 1 : index])
            if len(options) < 2:
                continue
            prefix, suffix = pattern[:start], pattern[index + 1 :]
            expanded: list[str] = []
            for option in options:
                for candidate in expand_braces(prefix + option + suffix):
                    if candidate not in expanded:
                        expanded.append(candidate)
            return expanded
    return [pattern]


def matches_glob(name: str, patterns: tuple[str, ...] | list[str]) -> bool:
    for pattern in patterns:
        if any(fnmatch(name, expanded) for expanded in expand_braces(pattern)):
            return True
    return False


def matches_file_patterns(raw_path: str, patterns: tuple[str, ...] | list[str]) -> bool:
    filename = os.path.basename(raw_path)
    # Names without a dot have no extension to filter on.
    if "." not in filename:
        return True
    return matches_glob(filename, patterns)


def canonical_path(path: str | Path) -> Path | None:
    try:
        return Path(path).resolve()
    except (OSError, RuntimeError, ValueError):
        return None


def literal_path(path: str | Path) -> Path | None:
    """Return ``path`` with its parent canonicalized but the last component kept.

    A symlink stays the link itself instead of becoming its target.
    """
    try:
        absolute = os.path.abspath(path)
        parent = Path(os.path.dirname(absolute)).resolve()
    except (OSError, RuntimeError, ValueError):
        return None
    name = os.path.basename(absolute)
    return parent / name if name else parent


def is_contained(path: Path, root: Path) -> bool:
    if path == root:
        return True
    try:
        relative = os.path.relpath(path, root)
    except ValueError:
        return False
    if relative == os.pardir or relative.startswith(os.pardir + os.sep):
        return False
    if os.path.isabs(relative) or relative.startswith(("/", "\\")):
        return False
    return _DRIVE_SEGMENT_RE.search(relative) is None


def is_within_directory(path: str | Path, directory: str | Path) -> bool:
    resolved = canonical_path(path)
    root = canonical_path(directory)
    if resolved is None or root is None:
        return False
    return is_contained(resolved, root)


def resolve_path(raw_path: object, config: AppConfig) -> ValidatedPath:
    if not isinstance(raw_path, str) or not raw_path:
        raise MissingPath()
    patterns = config.allowed_file_patterns
    if not matches_file_patterns(raw_path, patterns):
        raise PatternRejected()
    literal = literal_path(raw_path)
    target = canonical_path(raw_path)
    if literal is None or target is None:
        raise PathRejected()
    # Trailing slashes and symlinks can change the name the I/O lands on.
    if not all(matches_file_patterns(str(p), patterns) for p in (literal, target)):
        raise PatternRejected()
    roots = [root for root in map(canonical_path, config.allowed_dirs) if root]
    for candidate in (literal, target):
        if not any(is_contained(candidate, root) for root in roots):
            raise PathRejected()
    return ValidatedPath(raw=raw_path, resolved=str(literal), target=str(target))


async def fetch_to_file(url: str, destination: str) -> int:
    try:
        async with httpx.AsyncClient(
            transport=http_transport,
            follow_redirects=True,
            timeout=httpx.Timeout(60.0, connect=30.0),
        ) as client:
            response = await client.get(url)
            response.raise_for_status()
            content = response.content
        await aiofiles.os.makedirs(os.path.dirname(destination), exist_ok=True)
        async with aiofiles.open(destination, "wb") as handle:
            await handle.write(content)
    except (httpx.HTTPError, OSError) as exc:
        raise ExecutionError(f"Internal Server Error: {exc}") from exc
    return len(content)


def finish_download(task: asyncio.Task) -> None:
    pending_downloads.discard(task)
    detached = task in detached_downloads
    detached_downloads.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None and detached:
        append_backend_log("error", f"background download failed: {exc}")


async def download_file(
    request: DownloadRequest, config: AppConfig, client_ip: str
) -> Literal["completed", "detached"]:
    if not request.url:
        raise InvalidRequest("URL required")
    target = resolve_path(request.path, config)
    url = request.url

    async def job() -> int:
        byte_count = await fetch_to_file(url, target.resolved)
        if config.log_created_files:
            append_backend_log(
                "info",
                f"[{truncate_ip(client_ip)}] Downloaded '{target.raw}' from '{url}' "
                f"{format_size(byte_count)}",
            )
        return byte_count

    task = asyncio.create_task(job())
    pending_downloads.add(task)
    task.add_done_callback(finish_download)
    try:
        done, _ = await asyncio.wait({task}, timeout=config.download_timeout_seconds)
    finally:
        if not task.done():
            detached_downloads.add(task)
    if task not in done:
        append_backend_log(
            "info",
            f"download of '{target.raw}' still running after "
            f"{config.download_timeout_seconds}s, answering early",
        )
        return "detached"
    exc = task.exception()
    if exc is not None:
        append_backend_log("error", str(exc))
        raise exc
    return "completed"


def iter_glob_matches(root: str | Path, pattern: str) -> Iterator[Path]:
    """Yield absolute paths under ``root`` matching ``pattern``.

    Brace alternations are expanded first; each match is yielded once and
    only if it stays inside ``root``.
    """
    expansions = expand_braces(pattern)
    for expanded in expansions:
        if os.path.isabs(expanded) or os.path.splitdrive(expanded)[0]:
            raise InvalidRequest("Invalid pattern")
    root_path = Path(root)
    canonical_root = canonical_path(root_path)
    if canonical_root is None or not root_path.is_dir():
        return
    seen: set[Path] = set()
    for expanded in expansions:
        try:
            for match in root_path.glob(expanded):
                candidate = literal_path(match)
                if candidate is None or candidate in seen:
                    continue
                if not is_contained(candidate, canonical_root):
                    continue
                seen.add(candidate)
                yield candidate
        except (NotImplementedError, ValueError) as exc:
            raise InvalidRequest("Invalid pattern") from exc


async def remove_target(target: str | Path) -> None:
    try:
        is_link = await aiofiles.os.path.islink(target)
        if not is_link and await aiofiles.os.path.isdir(target):
            await asyncio.to_thread(shutil.rmtree, target)
        else:
            await aiofiles.os.remove(target)
    except FileNotFoundError:
        return
    except OSError as exc:
        raise ExecutionError(f"Internal Server Error: {exc}") from exc


async def delete_path(request: DeleteRequest, config: AppConfig, client_ip: str) -> int:
    target = resolve_path(request.path, config)
    if request.pattern:
        matches = await asyncio.to_thread(
            list, iter_glob_matches(target.resolved, request.pattern)
        )
        for match in matches:
            await remove_target(match)
        count = len(matches)
    else:
        await remove_target(target.resolved)
        count = 1
    if config.log_requests:
        suffix = f" matching '{request.pattern}'" if request.pattern else ""
        append_backend_log(
            "info",
            f"[{truncate_ip(client_ip)}] Deleted '{target.raw}'{suffix} "
            f"({count} target(s))",
        )
    return count


async def run_script(
    request: RunRequest, config: AppConfig, client_ip: str
) -> ScriptResult:
    target = resolve_path(request.path, config)
    for name in (target.raw, target.resolved, target.target):
        if Path(name).suffix.lower() not in SCRIPT_EXTENSIONS:
            raise InvalidRequest("Wrong file type")
    try:
        process = await asyncio.create_subprocess_exec(
            target.resolved,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout_bytes, stderr_bytes = await process.communicate()
    except OSError as exc:
        append_backend_log("error", f"could not start '{target.raw}': {exc}")
        raise ExecutionError(f"Internal Server Error: {exc}") from exc
    stdout = stdout_bytes.decode("utf-8", errors="replace")
    stderr = stderr_bytes.decode("utf-8", errors="replace")
    if process.returncode != 0:
        append_backend_log(
            "warning", f"'{target.raw}' exited with code {process.returncode}"
        )
        message = f"Command failed with exit code {process.returncode}"
        detail = stderr.strip() or stdout.strip()
        raise ExecutionError(f"{message}: {detail}" if detail else message)
    if config.log_requests:
        append_backend_log("info", f"[{truncate_ip(client_ip)}] Ran '{target.raw}'")
    return ScriptResult(stdout=stdout, stderr=stderr)


@app.post("/download", status_code=201, dependencies=[Depends(require_token)])
async def post_download(
    http_request: Request, request: DownloadRequest | None = None
) -> dict[str, bool]:
    await download_file(
        request or DownloadRequest(), get_config(), client_address(http_request)
    )
    return {"success": True}


@app.post("/run", dependencies=[Depends(require_token)], response_model=ScriptResult)
async def post_run(
    http_request: Request, request: RunRequest | None = None
) -> ScriptResult:
    return await run_script(
        request or RunRequest(), get_config(), client_address(http_request)
    )


@app.delete("/delete", dependencies=[Depends(require_token)])
async def delete_files(
    http_request: Request, request: DeleteRequest | None = None
) -> dict[str, bool]:
    await delete_path(
        request or DeleteRequest(), get_config(), client_address(http_request)
    )
    return {"success": True}


if __name__ == "__main__":
    import uvicorn

    load_env_file()
    setup_logging()
    try:
        reload_config()
    except ConfigError as exc:
        append_backend_log("error", str(exc))
        raise SystemExit(1) from exc
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", str(DEFAULT_PORT)))
    uvicorn.run("hostops:app", host=host, port=port, reload=False)
