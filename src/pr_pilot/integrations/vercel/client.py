"""Vercel deployments API client (preview and production)."""

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

VERCEL_API = "https://api.vercel.com"
MAX_SUBDOMAIN_LENGTH = 63

READY = "READY"
TERMINAL_FAILURES = {"ERROR", "CANCELED"}


def branch_to_subdomain(branch: str) -> str:
    """DNS-safe label for a branch name."""
    label = re.sub(r"[^a-z0-9]", "-", branch.lower())
    label = re.sub(r"-+", "-", label).strip("-")
    return label[:MAX_SUBDOMAIN_LENGTH].rstrip("-")


@dataclass
class Deployment:
    id: str
    url: str
    ready_state: str = "QUEUED"

    @property
    def https_url(self) -> str:
        return self.url if self.url.startswith("http") else f"https://{self.url}"

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Deployment":
        return cls(
            id=data["id"],
            url=data.get("url", ""),
            ready_state=data.get("readyState") or data.get("status") or "QUEUED",
        )


@dataclass
class DeployResult:
    success: bool
    url: Optional[str] = None
    deployment_url: Optional[str] = None
    error: Optional[str] = None


class VercelError(Exception):
    """Vercel API call failed."""


class VercelClient:
    def __init__(
        self,
        token: str,
        project: Optional[str] = None,
        team_id: Optional[str] = None,
        alias_domain: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.project = project
        self.alias_domain = alias_domain
        self._params = {"teamId": team_id} if team_id else {}
        self._http = httpx.Client(
            base_url=VERCEL_API,
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout,
            transport=transport,
        )
        self._sleep = sleep

    def close(self) -> None:
        self._http.close()

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self._http.request(method, path, params=self._params, **kwargs)
        except httpx.HTTPError as e:
            raise VercelError(f"{method} {path} failed: {e}") from e
        if response.status_code >= 400:
            raise VercelError(f"{method} {path}: HTTP {response.status_code} {response.text[:300]}")
        return response.json()

    # ------------------------------------------------------------------
    # Deployments
    # ------------------------------------------------------------------

    def create_deployment(self, repo_full_name: str, ref: str, target: Optional[str] = None) -> Deployment:
        org, name = repo_full_name.split("/", 1)
        payload: Dict[str, Any] = {
            "name": self.project or name,
            "gitSource": {"type": "github", "org": org, "repo": name, "ref": ref},
            "meta": {"branchName": ref, "purpose": "pr-pilot"},
        }
        if target:
            payload["target"] = target
        return Deployment.from_api(self._request("POST", "/v13/deployments", json=payload))

    def get_deployment(self, deployment_id: str) -> Deployment:
        return Deployment.from_api(self._request("GET", f"/v13/deployments/{deployment_id}"))

    def wait_until_ready(self, deployment_id: str, poll_interval: float, max_wait: float) -> Optional[Deployment]:
        """Poll until READY; None on a failed build or when max_wait elapses."""
        waited = 0.0
        while waited <= max_wait:
            try:
                deployment = self.get_deployment(deployment_id)
            except VercelError as e:
                logger.warning(f"⚠️ Deployment status poll failed: {e}")
                return None
            if deployment.ready_state == READY:
                return deployment
            if deployment.ready_state in TERMINAL_FAILURES:
                logger.error(f"❌ Deployment {deployment_id} ended in {deployment.ready_state}")
                return None
            self._sleep(poll_interval)
            waited += poll_interval
        logger.warning(f"⚠️ Deployment {deployment_id} not ready after {max_wait:.0f}s")
        return None

    def create_alias(self, deployment_id: str, hostname: str) -> bool:
        try:
            self._request("POST", f"/v2/deployments/{deployment_id}/aliases", json={"alias": hostname})
        except VercelError as e:
            logger.warning(f"⚠️ Alias creation failed for {hostname}: {e}")
            return False
        logger.info(f"🔗 Alias created: https://{hostname}")
        return True

    # ------------------------------------------------------------------
    # Flows
    # ------------------------------------------------------------------

    def deploy_preview(
        self,
        repo_full_name: str,
        branch: str,
        poll_interval: float = 10.0,
        max_wait: float = 360.0,
    ) -> DeployResult:
        """Preview build for a branch, aliased under the alias domain when configured."""
        try:
            deployment = self.create_deployment(repo_full_name, branch)
        except VercelError as e:
            return DeployResult(False, error=str(e))
        logger.info(f"🚀 Preview deployment {deployment.id} created for {branch}")

        ready = self.wait_until_ready(deployment.id, poll_interval, max_wait)
        if ready is None:
            return DeployResult(False, deployment_url=deployment.https_url,
                                error="Preview deployment did not become ready")

        url = ready.https_url
        if self.alias_domain:
            hostname = f"{branch_to_subdomain(branch)}.{self.alias_domain}"
            if self.create_alias(ready.id, hostname):
                url = f"https://{hostname}"
        return DeployResult(True, url=url, deployment_url=ready.https_url)

    def deploy_production(
        self,
        repo_full_name: str,
        ref: str,
        poll_interval: float = 10.0,
        max_wait: float = 600.0,
    ) -> DeployResult:
        try:
            deployment = self.create_deployment(repo_full_name, ref, target="production")
        except VercelError as e:
            return DeployResult(False, error=str(e))
        logger.info(f"🚀 Production deployment {deployment.id} created from {ref}")
        ready = self.wait_until_ready(deployment.id, poll_interval, max_wait)
        if ready is None:
            return DeployResult(False, deployment_url=deployment.https_url,
                                error="Production deployment did not become ready")
        return DeployResult(True, url=ready.https_url, deployment_url=ready.https_url)
