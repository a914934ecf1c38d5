"""
SIP dialog state for the single bridged call.
Tracks tags, CSeq and negotiated media, and builds the in-dialog requests (INVITE, ACK, BYE, CANCEL).
"""

import logging
import random
import string
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from .parser import SipMessage, extract_uri, header_param
from .sdp import MediaOffer

logger = logging.getLogger(__name__)

_TOKEN_CHARS = string.ascii_letters + string.digits


def random_token(length: int = 9) -> str:
    return "".join(random.choice(_TOKEN_CHARS) for _ in range(length))


def new_branch() -> str:
    # RFC 3261 magic cookie
    return f"z9hG4bK{random_token(12)}"


class DialogState(Enum):
    """SIP call states."""
    IDLE = "idle"
    INVITING = "inviting"
    RINGING = "ringing"
    OFFER_RECEIVED = "offer_received"
    ESTABLISHED = "established"
    TERMINATING = "terminating"


class Direction(Enum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"


@dataclass
class Dialog:
    """Represents the one SIP call the bridge can hold."""
    call_id: str
    direction: Direction
    local_address: Tuple[str, int]
    local_header: str
    remote_header: str
    request_uri: str
    contact: str
    user_agent: str
    state: DialogState = DialogState.IDLE
    local_cseq: int = 1
    invite_branch: str = field(default_factory=new_branch)
    remote_target: Optional[str] = None
    peer_address: Optional[Tuple[str, int]] = None
    remote_media: Optional[MediaOffer] = None
    invite: Optional[SipMessage] = None
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None

    @property
    def local_tag(self) -> Optional[str]:
        return header_param(self.local_header, "tag")

    @property
    def remote_tag(self) -> Optional[str]:
        return header_param(self.remote_header, "tag")

    @property
    def is_established(self) -> bool:
        return self.state == DialogState.ESTABLISHED

    @property
    def duration(self) -> float:
        end = self.end_time or time.time()
        return end - self.start_time

    def set_state(self, state: DialogState) -> None:
        if state != self.state:
            logger.debug(f"Dialog {self.call_id}: {self.state.value} -> {state.value}")
            self.state = state

    def next_cseq(self) -> int:
        self.local_cseq += 1
        return self.local_cseq

    def update_from_response(self, response: SipMessage) -> None:
        """Learn the remote tag and target from a dialog-creating response."""
        to_header = response.get("to")
        if to_header and header_param(to_header, "tag"):
            self.remote_header = to_header
        contact = extract_uri(response.get("contact"))
        if contact:
            self.remote_target = contact

    def via(self, branch: str) -> str:
        host, port = self.local_address
        return f"SIP/2.0/UDP {host}:{port};branch={branch};rport"

    def _request(self, method: str, uri: str, branch: str, cseq: int, to_header: str) -> SipMessage:
        request = SipMessage(method=method, uri=uri)
        request.headers.extend([
            ("Via", self.via(branch)),
            ("Max-Forwards", "70"),
            ("From", self.local_header),
            ("To", to_header),
            ("Call-ID", self.call_id),
            ("CSeq", f"{cseq} {method}"),
            ("User-Agent", self.user_agent),
        ])
        return request

    def create_invite(self, sdp: str) -> SipMessage:
        """Create the initial INVITE carrying our offer."""
        invite = self._request("INVITE", self.request_uri, self.invite_branch, self.local_cseq, self.remote_header)
        invite.headers.extend([
            ("Contact", f"<{self.contact}>"),
            ("Allow", "INVITE,ACK,OPTIONS,CANCEL,BYE"),
            ("Content-Type", "application/sdp"),
        ])
        invite.body = sdp
        self.invite = invite
        return invite

    def create_ack(self, response: SipMessage) -> SipMessage:
        """
        ACK for a final INVITE response.
        A 2xx ACK is its own transaction; a non-2xx ACK reuses the INVITE branch.
        """
        cseq, _ = response.cseq
        if 200 <= response.status_code < 300:
            uri = self.remote_target or self.request_uri
            branch = new_branch()
        else:
            uri = self.request_uri
            branch = self.invite_branch
        return self._request("ACK", uri, branch, cseq, response.get("to", self.remote_header))

    def create_bye(self) -> SipMessage:
        """Create BYE message to end the call."""
        uri = self.remote_target or self.request_uri
        return self._request("BYE", uri, new_branch(), self.next_cseq(), self.remote_header)

    def create_cancel(self) -> SipMessage:
        """CANCEL matches the outstanding INVITE transaction: same branch, same CSeq number."""
        return self._request("CANCEL", self.request_uri, self.invite_branch, self.local_cseq, self.remote_header)

    def hangup(self) -> None:
        if self.end_time is None:
            self.end_time = time.time()
            logger.info(f"Call {self.call_id} ended after {self.duration:.1f} seconds")
        self.set_state(DialogState.IDLE)
