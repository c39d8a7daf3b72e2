"""Client for the provider fetch service.

The fetch service (one Lambda per provider) collects pull requests,
deployments, workflow runs and incidents for a list of repositories over a
time window and returns them as one JSON document. This module only builds
the request and hands back whatever came back; parsing is the normalizer's
job.
"""

import json
import logging
from typing import Any, Dict, Optional

import requests
from pydantic import BaseModel

logger = logging.getLogger(__name__)

MASKED = "***MASKED***"


class FetchResponse(BaseModel):
    """Raw upstream answer: HTTP status plus decoded body."""

    status_code: int
    payload: Any

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class LambdaFetchClient:
    """POST fetch requests to the GitHub or Bitbucket fetch service."""

    def __init__(
        self,
        github_url: str,
        bitbucket_url: str,
        timeout: Optional[float] = None
    ):
        """Initialize fetch client.

        Args:
            github_url: Fetch service URL for GitHub tokens
            bitbucket_url: Fetch service URL for Bitbucket tokens
            timeout: Request timeout in seconds (None waits as long as the
                service needs; large repos can take minutes)
        """
        self.github_url = github_url
        self.bitbucket_url = bitbucket_url
        self.timeout = timeout
        self.headers = {"Content-Type": "application/json"}

    @staticmethod
    def token_type(token: Dict[str, Any]) -> str:
        return (token.get("type") or "github").strip().lower()

    def url_for(self, token: Dict[str, Any]) -> str:
        return self.bitbucket_url if self.token_type(token) == "bitbucket" else self.github_url

    def build_request_body(
        self,
        repo: Dict[str, Any],
        token: Dict[str, Any],
        from_time: str,
        to_time: str
    ) -> Dict[str, Any]:
        """Build the fetch request for one repository.

        Args:
            repo: Repo row (org_name, repo_name, cfr_type, workflow_file)
            token: Token row (token, type, email)
            from_time: Window start, second precision with Z suffix
            to_time: Window end, same format

        Returns:
            JSON-serializable request body

        Raises:
            ValueError: If the token is empty, or a Bitbucket token has no email
        """
        pat = (token.get("token") or "").strip()
        if not pat:
            raise ValueError("Repo token not found or invalid")

        # type 2 = CI-CD (workflow runs decide failures), 1 = PR merge
        fetch_type = 2 if repo.get("cfr_type") == "CI-CD" else 1

        body: Dict[str, Any] = {
            "repos": [
                {
                    "org_name": repo.get("org_name"),
                    "repo_name": repo.get("repo_name"),
                    "deployment_type": "PR_MERGE",
                }
            ],
            "from_time": from_time,
            "to_time": to_time,
            "type": fetch_type,
        }

        if self.token_type(token) == "bitbucket":
            email = (token.get("email") or "").strip()
            if not email:
                raise ValueError("Bitbucket token is missing email. Set it in Integrations.")
            body["email"] = email
            body["bitbucket_pat_token"] = pat
        else:
            body["github_pat_token"] = pat

        if fetch_type == 2 and repo.get("workflow_file"):
            body["workflow_file"] = repo["workflow_file"]

        return body

    @staticmethod
    def masked(body: Dict[str, Any]) -> Dict[str, Any]:
        """Copy of a request body with tokens replaced, safe for logs."""
        return {
            key: (MASKED if key.endswith("_pat_token") else value)
            for key, value in body.items()
        }

    def fetch(self, url: str, body: Dict[str, Any]) -> FetchResponse:
        """POST a fetch request.

        Non-2xx answers are returned, not raised, so the caller can keep the
        body for inspection.

        Raises:
            requests.RequestException: When the service cannot be reached
        """
        logger.info(f"Calling fetch service {url}")
        logger.debug(f"Fetch request body: {json.dumps(self.masked(body))}")

        response = requests.post(url, json=body, headers=self.headers, timeout=self.timeout)

        try:
            payload = response.json()
        except ValueError:
            payload = response.text

        logger.info(f"Fetch service answered {response.status_code}")
        if not (200 <= response.status_code < 300):
            logger.warning(
                f"Fetch service error {response.status_code}: {str(payload)[:500]}"
            )
        return FetchResponse(status_code=response.status_code, payload=payload)
