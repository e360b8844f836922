import logging
import os
import random
import time
from typing import Any, Callable, Optional

import httpx

from app.jobs.sync.errors import RemoteUnavailable

from .config import MeliConfig

logger = logging.getLogger(__name__)

RETRY_STATUSES = {429, 500, 502, 503, 504, 520, 522, 524}


class Unauthorized(Exception):
    """401 from the carrier; the caller decides whether a refreshed token is worth a retry."""


def mask_bearer(value: Optional[str]) -> Optional[str]:
    if not value:
        return value
    parts = value.split(" ", 1)
    if len(parts) != 2:
        return "****"
    scheme, token = parts
    if len(token) <= 6:
        return f"{scheme} ****"
    return f"{scheme} ****{token[-4:]}"


def configure_logging_if_needed() -> None:
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=os.getenv("LOG_LEVEL", "INFO").upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


def log_request(request: httpx.Request) -> None:
    logger.debug("HTTP %s %s", request.method, request.url)
    logger.debug("HTTP Authorization: %s", mask_bearer(request.headers.get("authorization")))


def make_client(cfg: MeliConfig, *, transport: Optional[httpx.BaseTransport] = None) -> httpx.Client:
    timeout = httpx.Timeout(
        connect=cfg.connect_timeout,
        read=cfg.read_timeout,
        write=cfg.write_timeout,
        pool=cfg.pool_timeout,
    )
    return httpx.Client(
        base_url=cfg.base_url,
        timeout=timeout,
        headers={"Accept": "application/json"},
        event_hooks={"request": [log_request]},
        transport=transport,
    )


def sleep_backoff(cfg: MeliConfig, *, attempt: int, path: str, sleep: Callable[[float], None] = time.sleep) -> None:
    sleep_s = cfg.backoff_base * (2 ** (attempt - 1))
    sleep_s += random.uniform(0, 0.5)
    logger.info("Sleeping %.2fs before retrying %s", sleep_s, path)
    sleep(sleep_s)


def get_with_retry(
    cfg: MeliConfig,
    client: httpx.Client,
    path: str,
    *,
    token: str,
    sleep: Callable[[float], None] = time.sleep,
    acquire: Optional[Callable[[], Any]] = None,
) -> Optional[Any]:
    """
    GET a JSON resource. 404 -> None, 401 -> Unauthorized, other non-retryable
    4xx and exhausted retries -> RemoteUnavailable.

    acquire, when given, is called before every attempt (rate limiter slot).
    """
    last_err: Optional[Exception] = None
    last_status: Optional[int] = None
    headers = {"Authorization": f"Bearer {token}"}

    for attempt in range(1, cfg.retries + 1):
        if acquire is not None:
            acquire()
        t0 = time.perf_counter()
        try:
            r = client.get(path, headers=headers)
            elapsed = time.perf_counter() - t0

            if r.status_code == 404:
                logger.debug("GET %s -> 404 after %.2fs", path, elapsed)
                return None

            if r.status_code == 401:
                raise Unauthorized(path)

            if r.status_code in RETRY_STATUSES:
                snippet = (r.text or "")[:300]
                logger.warning(
                    "Retryable HTTP %d (attempt %d/%d) GET %s after %.2fs body_snippet=%r",
                    r.status_code,
                    attempt,
                    cfg.retries,
                    path,
                    elapsed,
                    snippet,
                )
                raise httpx.HTTPStatusError("Retryable status", request=r.request, response=r)

            if elapsed > 5:
                logger.info("GET %s completed in %.2fs status=%d (slow)", path, elapsed, r.status_code)
            else:
                logger.debug("GET %s completed in %.2fs status=%d", path, elapsed, r.status_code)

            r.raise_for_status()
            return r.json()

        except (httpx.ReadTimeout, httpx.ConnectTimeout) as e:
            elapsed = time.perf_counter() - t0
            last_err = e
            logger.warning(
                "%s (attempt %d/%d) GET %s after %.2fs (timeouts: connect=%.1fs read=%.1fs)",
                e.__class__.__name__,
                attempt,
                cfg.retries,
                path,
                elapsed,
                float(client.timeout.connect),
                float(client.timeout.read),
            )

        except httpx.HTTPStatusError as e:
            elapsed = time.perf_counter() - t0
            last_err = e
            status = e.response.status_code if e.response is not None else None
            last_status = status
            if status not in RETRY_STATUSES:
                snippet = (e.response.text or "")[:300] if e.response is not None else None
                logger.error(
                    "Non-retryable HTTP %s GET %s after %.2fs body_snippet=%r",
                    status,
                    path,
                    elapsed,
                    snippet,
                )
                raise RemoteUnavailable(f"HTTP {status} for {path}", status_code=status) from e

        except httpx.TransportError as e:
            elapsed = time.perf_counter() - t0
            last_err = e
            logger.warning(
                "Request failed (attempt %d/%d) GET %s after %.2fs error=%r",
                attempt,
                cfg.retries,
                path,
                elapsed,
                e,
            )

        except ValueError as e:
            # 2xx with a body that is not JSON
            raise RemoteUnavailable(f"invalid JSON from {path}: {e}") from e

        if attempt < cfg.retries:
            sleep_backoff(cfg, attempt=attempt, path=path, sleep=sleep)

    raise RemoteUnavailable(f"GET {path} failed after {cfg.retries} attempts: {last_err!r}", status_code=last_status)
