# enrichment/dispatcher.py
import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from .models import CrawlJobRequest

APIFY_API_BASE = "https://api.apify.com/v2"

logger = logging.getLogger("dispatcher")
logger.setLevel(logging.INFO)
handler = logging.StreamHandler()
handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
logger.addHandler(handler)


class DispatchError(Exception):
    """The task runner refused or could not receive a crawl job."""

    def __init__(self, status: Optional[int], body: str):
        super().__init__(f"crawl dispatch failed ({status}): {body}")
        self.status = status
        self.body = body


class CrawlDispatcher:
    def __init__(
        self,
        client: httpx.AsyncClient,
        token: Optional[str],
        task_id: Optional[str],
        webhook_secret: Optional[str],
        timeout: float = 10.0,
        api_base: str = APIFY_API_BASE,
    ):
        self.client = client
        self.token = token
        self.task_id = task_id
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self.api_base = api_base.rstrip("/")

    @property
    def configured(self) -> bool:
        return bool(self.token and self.task_id)

    def build_job(self, isbn13: str, target_url: str) -> CrawlJobRequest:
        return CrawlJobRequest(
            isbn13=isbn13, target_url=target_url, callback_secret=self.webhook_secret
        )

    async def dispatch(self, job: CrawlJobRequest) -> Dict[str, Any]:
        """
        Start one run of the configured actor task for a product page.

        The POST body replaces the task's saved input for this run only.

        Args:
            job: ISBN, resolved product URL and the secret the crawler must
                echo back in the webhook header.

        Returns:
            dict: The run descriptor ("data" of the response). Its id is
                only used for logging.

        Raises:
            DispatchError: credentials missing, transport failure, or any
                non-2xx answer (status and body attached).
        """
        if not self.configured:
            raise DispatchError(None, "task runner credentials not configured")

        endpoint = f"{self.api_base}/actor-tasks/{self.task_id}/runs"
        body = {
            "startUrls": [{"url": job.target_url}],
            "isbn13": job.isbn13,
            "webhook_secret": job.callback_secret,
        }
        try:
            async with asyncio.timeout(self.timeout):
                resp = await self.client.post(
                    endpoint,
                    params={"token": self.token},
                    json=body,
                    timeout=self.timeout,
                )
        except TimeoutError as e:
            raise DispatchError(None, f"no answer within {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise DispatchError(None, str(e)) from e

        if not resp.is_success:
            raise DispatchError(resp.status_code, resp.text)

        try:
            data = resp.json()
        except ValueError:
            data = {}
        run = data.get("data", data) if isinstance(data, dict) else {}
        if not isinstance(run, dict):
            run = {}
        logger.info(f"Crawl dispatched for {job.isbn13}: run {run.get('id')}")
        return run
