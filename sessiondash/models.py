"""Pydantic models matching the frontend TypeScript types."""
from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Any, Optional

# ── Session identity ───────────────────────────────────────────────

class SessionIdentity(BaseModel):
    dirName: str
    fileName: str

    @property
    def key(self) -> str:
        return f"{self.dirName}/{self.fileName}"


# ── Turn-related models ────────────────────────────────────────────

class ToolCall(BaseModel):
    id: str = ""
    name: str = ""
    input: dict[str, Any] = Field(default_factory=dict)
    result: Optional[str] = None
    isError: bool = False
    pending: bool = True
    timestamp: str = ""


class Turn(BaseModel):
    index: int
    userEvent: Optional[dict[str, Any]] = None
    userText: str = ""
    events: list[dict[str, Any]] = Field(default_factory=list)
    assistantText: list[str] = Field(default_factory=list)
    thinking: list[str] = Field(default_factory=list)
    toolCalls: list[ToolCall] = Field(default_factory=list)
    model: Optional[str] = None
    timestamp: str = ""
    durationMs: Optional[int] = None
    compactionSummary: Optional[str] = None
    startEvent: int = 0  # index into the parsed event list (inclusive)
    endEvent: int = 0    # exclusive


class SessionStatusInfo(BaseModel):
    status: str = "idle"  # "idle" | "thinking" | "tool_use" | "processing" | "completed"
    toolName: Optional[str] = None
    pendingQueue: int = 0


class SessionView(BaseModel):
    dirName: str
    fileName: str
    fingerprint: str
    turns: list[Turn] = Field(default_factory=list)
    status: SessionStatusInfo = Field(default_factory=SessionStatusInfo)


# ── Branch models ──────────────────────────────────────────────────

class BranchSummary(BaseModel):
    id: str
    dirName: str
    fileName: str
    turnIndex: int  # last live turn kept when the branch was archived
    label: str = "Untitled branch"
    createdAt: str = ""
    turnCount: int = 0
    byteSize: int = 0
    sliceHash: str = ""
    parentBranchId: Optional[str] = None


class BranchDetail(BranchSummary):
    content: str = ""
    turns: list[Turn] = Field(default_factory=list)


# ── Mutation contract ──────────────────────────────────────────────

class BranchSessionRequest(BaseModel):
    dirName: str
    fileName: str
    turnIndex: Optional[int] = None


class BranchSessionResponse(BaseModel):
    dirName: str
    fileName: str
    sessionId: str = ""
    branchedFrom: str = ""


class RestoreRequest(BaseModel):
    dirName: str
    fileName: str
    turnIndex: int
    fingerprint: Optional[str] = None


class RestoreResponse(BaseModel):
    dirName: str
    fileName: str
    fingerprint: str
    turnCount: int
    branch: Optional[BranchSummary] = None


class MaterializeRequest(BaseModel):
    dirName: str
    fileName: str
    branchId: str
    turnIndex: Optional[int] = None  # last archived turn to bring back, 0-based within the branch
    fingerprint: Optional[str] = None


class MaterializeResponse(BaseModel):
    dirName: str
    fileName: str
    fingerprint: str
    turnCount: int
    archivedBranch: Optional[BranchSummary] = None
    remainderBranch: Optional[BranchSummary] = None
