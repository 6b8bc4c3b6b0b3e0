from __future__ import annotations

import logging
import urllib.parse

from summarium.core.errors import HttpStatusError, RetryExhaustedError, SourceDownloadError
from summarium.domain.models.job import SourceReference
from summarium.infrastructure.http.client import HttpClient

logger = logging.getLogger(__name__)

DRIVE_FILES_ENDPOINT = "https://www.googleapis.com/drive/v3/files"


class SourceDownloader:
    """Fetches the raw source document for a job."""

    def __init__(self, http_client: HttpClient, *, drive_endpoint: str = DRIVE_FILES_ENDPOINT) -> None:
        self.http_client = http_client
        self.drive_endpoint = drive_endpoint.rstrip("/")

    def download(self, source: SourceReference) -> bytes:
        if source.is_url:
            label = "download source document"
            url = str(source.url)
            headers: dict[str, str] = {}
        elif source.is_file_host:
            label = "download source document from file host"
            url = f"{self.drive_endpoint}/{urllib.parse.quote(str(source.file_id), safe='')}?alt=media"
            headers = {"Authorization": f"Bearer {source.access_token}"}
        else:
            raise SourceDownloadError("Missing source URL or (file id + access token).")

        try:
            response = self.http_client.get(url, label=label, headers=headers)
        except (RetryExhaustedError, HttpStatusError) as exc:
            raise SourceDownloadError(f"{label} failed: {exc}") from exc

        logger.info("Downloaded %s bytes (%s)", len(response.body), label)
        return response.body
