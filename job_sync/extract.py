"""Paginated fetch of raw postings from the upstream job listing API."""

from __future__ import annotations

import logging
from typing import Optional

import requests
from pydantic import ValidationError

from .config import SourceConfig
from .errors import ExtractionError
from .models import JobListingResponse, RawJobPosting

logger = logging.getLogger(__name__)

_USER_AGENT = "job-sync/0.1 (+academic job ETL)"


class JobSourceClient:
    def __init__(self, config: SourceConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", _USER_AGENT)
        self.total_count: Optional[int] = None

    def fetch_page(self, page: int, page_size: Optional[int] = None) -> list[RawJobPosting]:
        """Fetch one page. An empty list means there is nothing further to read."""
        if not self.config.base_url:
            raise ExtractionError("source.base_url is not configured")
        limit = page_size or self.config.page_size
        url = f"{self.config.base_url.rstrip('/')}/jobs"
        try:
            resp = self.session.get(
                url, params={"page": page, "limit": limit}, timeout=self.config.timeout
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise ExtractionError(f"Fetching page {page} failed: {e}") from e

        try:
            listing = JobListingResponse.model_validate(data)
        except ValidationError as e:
            raise ExtractionError(f"Invalid job listing response on page {page}: {e}") from e

        if page == 1:
            self.total_count = listing.total_count
            logger.info("Upstream reports %d jobs", listing.total_count)
        logger.debug("Fetched %d jobs from page %d", len(listing.results), page)
        return listing.results
