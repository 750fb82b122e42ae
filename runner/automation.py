"""HTTP client for the external automation backend.

The backend runs one project per call: it receives the project's prompts
(already ordered and cut at the first ``exit`` prompt) and answers with a
2xx status on success. Anything else, including a timeout, is raised as
AutomationError so the engine can apply its retry policy. Client errors
(other than 408 and 429) and a few known backend messages are permanent:
the engine fails the project without retrying them.
"""

import logging
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

PROJECTS_PATH = "/gemini/projects"
USER_AGENT = "prompt-relay/0.1"

PERMANENT_ERROR_MARKERS = (
    "profile is currently in use",
    "script not found",
    "topic not found",
    "script has no projects",
    "script contains cycles",
    "invalid execution_id",
)

# Client errors that are still worth retrying
RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


class AutomationError(Exception):
    """Raised when the automation backend call fails or returns a non-success status."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def permanent(self) -> bool:
        """True when retrying the same call cannot succeed."""
        if any(marker in str(self) for marker in PERMANENT_ERROR_MARKERS):
            return True
        status = self.status_code
        return (
            status is not None
            and 400 <= status < 500
            and status not in RETRYABLE_CLIENT_STATUSES
        )


@dataclass
class ProjectRunResult:
    """Result of one successful backend call."""

    status_code: int
    body: dict[str, Any] | None = None


def select_prompts(prompts: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Order prompts by prompt_order and drop everything after the first exit prompt."""
    selected: list[dict[str, Any]] = []
    for prompt in sorted(prompts, key=lambda p: p["prompt_order"]):
        selected.append(prompt)
        if prompt.get("exit"):
            break
    return selected


def build_project_payload(
    execution_id: str,
    project: dict[str, Any],
    prompts: list[dict[str, Any]],
    merge_from: list[str] | None = None,
) -> dict[str, Any]:
    """Build the request body for one project run."""
    prompt_list: list[dict[str, Any]] = []
    for prompt in select_prompts(prompts):
        item: dict[str, Any] = {
            "prompt": prompt["text"],
            "output": prompt.get("filename") or "",
            "input_files": prompt.get("input_files") or [],
            "prompt_id": prompt["id"],
        }
        # Flags are only sent when set
        if prompt.get("merge"):
            item["merge"] = True
        if prompt.get("exit"):
            item["exit"] = True
        prompt_list.append(item)

    payload: dict[str, Any] = {
        "execution_id": execution_id,
        "project": project["project_id"],
        "gemName": f"{project['project_id']}_{project['name']}",
        "prompts": prompt_list,
    }
    if project.get("output_name"):
        payload["output_merge"] = project["output_name"]
    if merge_from:
        payload["merge_from"] = list(merge_from)
    return payload


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("error", "message"):
            if isinstance(body.get(key), str) and body[key]:
                return f"automation backend error: {body[key]}"
    return f"automation backend returned status {response.status_code}: {response.text[:500]}"


class AutomationClient:
    """Thin wrapper over httpx.Client for the automation backend."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"User-Agent": USER_AGENT},
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "AutomationClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def run_project(
        self,
        *,
        execution_id: str,
        topic_id: str,
        user_id: str,
        project: dict[str, Any],
        prompts: list[dict[str, Any]],
        merge_from: list[str] | None = None,
    ) -> ProjectRunResult:
        """Run one project on the backend.

        Raises:
            AutomationError: On timeout, transport failure, or a non-2xx status.
        """
        payload = build_project_payload(execution_id, project, prompts, merge_from)
        headers = {
            "X-User-ID": user_id,
            "X-Entity-Type": "script_execution",
            "X-Entity-ID": topic_id,
        }

        logger.info(
            "Calling automation backend for project %s (execution %s, %d prompts)",
            project["project_id"],
            execution_id,
            len(payload["prompts"]),
        )
        try:
            response = self._client.post(PROJECTS_PATH, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise AutomationError(f"automation backend timed out: {e}") from e
        except httpx.HTTPError as e:
            raise AutomationError(f"failed to call automation backend: {e}") from e

        if not response.is_success:
            logger.error(
                "Automation backend returned %d for project %s: %s",
                response.status_code,
                project["project_id"],
                response.text[:500],
            )
            raise AutomationError(_error_message(response), response.status_code)

        try:
            body = response.json()
        except ValueError:
            body = None
        return ProjectRunResult(
            status_code=response.status_code,
            body=body if isinstance(body, dict) else None,
        )
