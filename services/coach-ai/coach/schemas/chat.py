from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel

from .proposal import Proposal, ProposalState

Role = Literal["user", "assistant"]


class ChatThread(BaseModel):
    id: str
    user_id: str
    title: Optional[str] = None
    created_at: datetime


class ChatMessage(BaseModel):
    id: str
    thread_id: str
    role: Role
    content: str
    handler_type: Optional[str] = None
    created_at: datetime


class MessageView(BaseModel):
    id: str
    role: Role
    text: str
    handler_type: Optional[str] = None
    proposal: Optional[Proposal] = None
    proposal_state: Optional[ProposalState] = None
    created_at: datetime


class ChatReply(BaseModel):
    thread_id: str
    message_id: str
    handler_type: str
    text: str
    content: str
    proposal: Optional[Proposal] = None
    proposal_state: Optional[ProposalState] = None
