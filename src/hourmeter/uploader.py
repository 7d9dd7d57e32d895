import httpx
import structlog

from hourmeter.config import Config
from hourmeter.errors import ConfigError, UploadFailedError
from hourmeter.models import UploadResult

logger = structlog.get_logger()


def resolve_ingest_url(config: "Config") -> "str":
    """
    returns the configured ingest endpoint, building it from the base
    URL and product name when no full URL is set.
    """
    if config.ingest_url:
        return config.ingest_url

    if not config.ingest_base_url:
        raise ConfigError(
            "Missing ingest URL. Set HOURMETER_INGEST_URL or HOURMETER_INGEST_BASE_URL."
        )
    base = config.ingest_base_url.rstrip("/")
    return f"{base}/api/usage/{config.ingest_product}/hourly"


def _parse_ack(response: "httpx.Response") -> "int":
    try:
        body = response.json()
    except ValueError as exc:
        raise UploadFailedError(
            f"Unparsable ingest response: {response.text[:200]!r}",
            status=response.status_code,
        ) from exc

    if not isinstance(body, dict) or body.get("ok") is not True:
        raise UploadFailedError(
            f"Unexpected ingest response: {body!r}", status=response.status_code
        )

    imported_rows = body.get("importedRows")
    if isinstance(imported_rows, bool) or not isinstance(imported_rows, int):
        raise UploadFailedError(
            f"Unexpected ingest response: {body!r}", status=response.status_code
        )
    return imported_rows


async def upload_hourly_usage_csv(
    hour_start_iso: "str",
    csv: "str",
    ingest_url: "str",
    token: "str",
    timeout: "float" = 30.0,
    client: "httpx.AsyncClient | None" = None,
) -> "UploadResult":
    """
    posts one hour's CSV to the ingest endpoint and returns the number
    of rows it acknowledged. Exactly one request is made, failures are
    raised as UploadFailedError and never retried here.
    """
    if not token:
        raise UploadFailedError("Missing HOURMETER_INGEST_TOKEN.")

    headers = {
        "Authorization": f"Bearer {token}",
        "Content-Type": "text/csv; charset=utf-8",
        "X-Usage-Hour": hour_start_iso,
    }

    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=timeout)

    try:
        logger.debug("ingest_upload_start", url=ingest_url, hour=hour_start_iso)
        resp = await client.post(
            ingest_url, content=csv.encode("utf-8"), headers=headers
        )
    except httpx.HTTPError as exc:
        raise UploadFailedError(f"Ingest upload failed: {exc}") from exc
    finally:
        if owns_client:
            await client.aclose()

    if not resp.is_success:
        raise UploadFailedError(
            f"Ingest upload failed ({resp.status_code}): {resp.text[:200]}",
            status=resp.status_code,
        )

    imported_rows = _parse_ack(resp)
    logger.debug(
        "ingest_upload_done",
        hour=hour_start_iso,
        status=resp.status_code,
        imported_rows=imported_rows,
    )
    return UploadResult(imported_rows=imported_rows, status=resp.status_code)
