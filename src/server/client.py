"""HTTP client for the remote job service."""

import logging
import os
import time
from typing import Optional

import requests

from server.httpd import DEFAULT_BIND, DEFAULT_PORT

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10
TERMINAL_STATUSES = ('completed', 'failed')


class JobClientError(Exception):
    """Error talking to the job service."""

    def __init__(self, message: str, status: Optional[int] = None, code: str = ''):
        self.status = status
        self.code = code
        super().__init__(message)


def default_server_url() -> str:
    """Server URL: $BOOTSTRAP_SERVER, else the local default."""
    return os.environ.get('BOOTSTRAP_SERVER', f"http://{DEFAULT_BIND}:{DEFAULT_PORT}")


class JobClient:
    """Thin wrapper over the job service HTTP API."""

    def __init__(self, base_url: Optional[str] = None, timeout: float = DEFAULT_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.base_url = (base_url or default_server_url()).rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.ConnectionError as e:
            raise JobClientError(f"Cannot connect to {self.base_url}: {e}") from e
        except requests.exceptions.Timeout as e:
            raise JobClientError(f"Timeout talking to {self.base_url}") from e

        if resp.status_code >= 400:
            message = resp.text[:200]
            code = ''
            try:
                error = resp.json().get('error', {})
                message = error.get('message', message)
                code = error.get('code', '')
            except ValueError:
                pass  # Non-JSON error body
            raise JobClientError(message, status=resp.status_code, code=code)
        return resp

    def health(self) -> bool:
        try:
            return self._request('GET', '/health').json().get('status') == 'ok'
        except JobClientError:
            return False

    def profiles(self) -> list[str]:
        return self._request('GET', '/profiles').json()['profiles']

    def submit_job(self, path: str, profile: Optional[str] = None) -> int:
        payload = {'path': path}
        if profile:
            payload['profile'] = profile
        return self._request('POST', '/jobs', json=payload).json()['job_id']

    def get_job(self, job_id: int) -> dict:
        return self._request('GET', f'/jobs/{job_id}').json()

    def get_job_log(self, job_id: int) -> str:
        return self._request('GET', f'/jobs/{job_id}/log').text

    def list_jobs(self, limit: int = 20) -> list[dict]:
        return self._request('GET', '/jobs', params={'limit': limit}).json()['jobs']

    def list_projects(self) -> list[dict]:
        return self._request('GET', '/projects').json()['projects']

    def wait_for_job(self, job_id: int, timeout: float = 600, interval: float = 1.0) -> dict:
        """Poll until the job reaches a terminal status.

        Raises:
            JobClientError: If the job is still running after timeout
        """
        deadline = time.monotonic() + timeout
        while True:
            job = self.get_job(job_id)
            if job.get('status') in TERMINAL_STATUSES:
                return job
            if time.monotonic() >= deadline:
                raise JobClientError(f"Job {job_id} still running after {timeout:g}s")
            time.sleep(interval)
