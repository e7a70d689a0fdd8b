"""Request/response contract with the processing unit."""

import json
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class DispatchRequest(BaseModel):
    """One call to the processing unit: a path and a JSON body."""

    path: str
    payload: dict[str, Any] = Field(repr=False)


class DispatchResponse(BaseModel):
    status_code: int
    body: dict[str, Any]

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class ProcessingResult(BaseModel):
    """What the processing unit answers for ``/process-issue``."""

    model_config = ConfigDict(extra="ignore")

    success: bool
    message: str = ""
    error: Optional[str] = None


class IssueContext(BaseModel):
    """Non-secret issue facts forwarded to the processing unit.

    Field aliases are the environment-variable names the processing unit
    reads. Credentials are attached separately in ``to_payload`` so they
    never end up in a ``repr`` or a model dump.
    """

    model_config = ConfigDict(populate_by_name=True)

    issue_id: str = Field(alias="ISSUE_ID")
    issue_number: str = Field(alias="ISSUE_NUMBER")
    issue_title: str = Field(alias="ISSUE_TITLE")
    issue_body: str = Field(default="", alias="ISSUE_BODY")
    issue_labels: str = Field(default="[]", alias="ISSUE_LABELS")
    repository_url: str = Field(default="", alias="REPOSITORY_URL")
    repository_name: str = Field(alias="REPOSITORY_NAME")
    issue_author: str = Field(default="", alias="ISSUE_AUTHOR")

    @classmethod
    def from_webhook(cls, issue: dict[str, Any], repository: dict[str, Any]) -> "IssueContext":
        labels = [label.get("name", "") for label in issue.get("labels") or []]
        return cls(
            issue_id=str(issue["id"]),
            issue_number=str(issue["number"]),
            issue_title=issue.get("title") or "",
            issue_body=issue.get("body") or "",
            issue_labels=json.dumps(labels),
            repository_url=repository.get("clone_url") or "",
            repository_name=repository.get("full_name") or "",
            issue_author=(issue.get("user") or {}).get("login", ""),
        )

    def to_payload(self, github_token: str, api_key: str) -> dict[str, str]:
        payload = self.model_dump(by_alias=True)
        payload["GITHUB_TOKEN"] = github_token
        payload["ANTHROPIC_API_KEY"] = api_key
        payload["MESSAGE"] = f"Processing issue #{self.issue_number}: {self.issue_title}"
        return payload
