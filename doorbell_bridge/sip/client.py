"""
SIP client for the doorbell bridge.
Handles registration, outbound and inbound calls, digest authentication and teardown
over a single asyncio UDP endpoint.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Callable, Dict, NoReturn, Optional, Set, Tuple

from doorbell_bridge.config.settings import Settings
from doorbell_bridge.events import (EventSink, InboundCall, SipCallEnded, SipCallEstablished,
                                    SipCallFailed, SipRinging)
from doorbell_bridge.exceptions import AuthRequired, CallFailure, RejectedOffer, TransportError
from .auth import AuthChallenge, DigestAuthenticator
from .call import Dialog, DialogState, Direction, new_branch, random_token
from .parser import SipMessage, extract_uri, make_response, parse_sip_message
from .sdp import MediaOffer, build_offer, parse_offer

logger = logging.getLogger(__name__)

Address = Tuple[str, int]
ResponseKey = Tuple[Optional[str], int, str]


class RegistrationState(Enum):
    IDLE = "idle"
    REGISTERING = "registering"
    REGISTERED = "registered"
    FAILED = "failed"


class _SipProtocol(asyncio.DatagramProtocol):
    """Hands every datagram on the signaling socket to the client."""

    def __init__(self, client: "SipClient"):
        self.client = client

    def connection_made(self, transport):
        logger.debug("SIP datagram endpoint ready")

    def datagram_received(self, data: bytes, addr: Address):
        self.client.handle_datagram(data, addr)

    def error_received(self, exc):
        logger.error(f"SIP socket error: {exc}")

    def connection_lost(self, exc):
        if exc:
            logger.warning(f"SIP socket closed: {exc}")


class SipClient:
    """
    SIP user agent for the bridge: keeps the account registered and holds at most one dialog.

    Lifecycle notifications (ringing, established, ended, failed, inbound call) are emitted
    as events; `initiate_call` additionally returns the dialog or raises `CallFailure`.
    """

    def __init__(self, settings: Settings, emit: EventSink,
                 authenticator: Optional[DigestAuthenticator] = None):
        self.settings = settings
        self.emit = emit
        self.authenticator = authenticator or DigestAuthenticator(settings.sip.username, settings.sip.password)

        self.local_ip = settings.media.local_ip
        self.local_port = settings.media.sip_port
        self.registrar: Address = (settings.sip.domain, settings.sip.port)

        self.dialog: Optional[Dialog] = None
        self.registration_state = RegistrationState.IDLE

        self._transport: Optional[asyncio.DatagramTransport] = None
        self._register_task: Optional[asyncio.Task] = None
        self._pending: Dict[ResponseKey, asyncio.Queue] = {}
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> DialogState:
        return self.dialog.state if self.dialog else DialogState.IDLE

    @property
    def is_busy(self) -> bool:
        """True while a call is being set up, is up, or is being torn down."""
        return self.state != DialogState.IDLE

    @property
    def remote_media(self) -> Optional[MediaOffer]:
        return self.dialog.remote_media if self.dialog else None

    @property
    def aor(self) -> str:
        return f"sip:{self.settings.sip.username}@{self.settings.sip.domain}"

    @property
    def contact_uri(self) -> str:
        return f"sip:{self.settings.sip.username}@{self.local_ip}:{self.local_port}"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Bind the signaling socket and start dispatching inbound requests."""
        if self._transport:
            return
        loop = asyncio.get_running_loop()
        try:
            self._transport, _ = await loop.create_datagram_endpoint(
                lambda: _SipProtocol(self), local_addr=(self.local_ip, self.local_port))
        except OSError as e:
            raise TransportError(f"Failed to bind SIP socket on {self.local_ip}:{self.local_port}: {e}") from e
        logger.info(f"SIP client started on {self.local_ip}:{self.local_port}")

    def register(self, expires: Optional[int] = None) -> None:
        """Register now and keep re-registering every `expires` seconds."""
        if self._register_task and not self._register_task.done():
            return
        expires = expires or self.settings.sip.register_expires
        self._register_task = asyncio.get_running_loop().create_task(self._register_loop(expires))

    async def initiate_call(self, destination: Optional[str] = None) -> Optional[Dialog]:
        """
        Call `destination` (defaults to the configured extension).

        Returns:
            The established Dialog, or None if a call is already in progress.

        Raises:
            CallFailure: if the INVITE ends with a non-2xx final response, times out,
                or is answered without usable media.
        """
        if self.is_busy:
            logger.info(f"Call already in progress ({self.state.value}), ignoring new call request")
            return None

        uri = destination or self.settings.sip.destination_uri
        dialog = Dialog(
            call_id=random_token(),
            direction=Direction.OUTBOUND,
            local_address=(self.local_ip, self.local_port),
            local_header=f"<{self.aor}>;tag={random_token()}",
            remote_header=f"<{uri}>",
            request_uri=uri,
            contact=self.contact_uri,
            user_agent=self.settings.sip.user_agent,
            state=DialogState.INVITING,
        )
        self.dialog = dialog
        logger.info(f"📞 Initiating call to {uri} (Call-ID: {dialog.call_id})")

        def on_provisional(response: SipMessage) -> None:
            if response.status_code == 180 and dialog.state == DialogState.INVITING:
                logger.info(f"Phone is ringing ({response.status_code} {response.status_text})...")
                dialog.set_state(DialogState.RINGING)
                self.emit(SipRinging(dialog.call_id))

        invite = dialog.create_invite(self._local_sdp())
        try:
            response = await self._request_with_auth(
                invite, on_provisional=on_provisional, timeout=self.settings.calls.invite_timeout)
        except TransportError:
            self._drop_dialog(dialog)
            raise

        if response is None:
            return self._fail_call(dialog, 408, "Request Timeout")
        return self._handle_invite_final(dialog, response)

    async def terminate(self) -> None:
        """
        Best-effort teardown: BYE (or CANCEL), then unregister.
        Every step is attempted even if an earlier one fails.
        """
        steps = []
        dialog = self.dialog
        if dialog and dialog.state == DialogState.ESTABLISHED:
            logger.info(f"📤 Sending BYE to terminate call {dialog.call_id}...")
            dialog.set_state(DialogState.TERMINATING)
            steps.append(self._send_bye(dialog))
        elif dialog and dialog.state in (DialogState.INVITING, DialogState.RINGING):
            logger.info(f"📤 Sending CANCEL to terminate call {dialog.call_id}...")
            dialog.set_state(DialogState.TERMINATING)
            steps.append(self._send_cancel(dialog))

        if self._register_task:
            self._register_task.cancel()
            self._register_task = None
            steps.append(self._send_register(0))

        for step in steps:
            self._spawn(step)
        # Let every request reach the wire before returning
        await asyncio.sleep(0)

    async def retry_with_digest_auth(self, request: SipMessage, response: SipMessage,
                                     addr: Optional[Address] = None,
                                     on_provisional: Optional[Callable[[SipMessage], None]] = None,
                                     timeout: Optional[float] = None) -> Optional[SipMessage]:
        """
        Answer a 401/407 challenge: sign `request`, bump its CSeq by one and send it again.

        Returns the final response to the signed request, which is never retried again.

        Raises:
            AuthRequired: if the challenge cannot be answered.
        """
        is_proxy = response.status_code == 407
        header = response.get("proxy-authenticate" if is_proxy else "www-authenticate")
        challenge = AuthChallenge.parse(header or "", is_proxy=is_proxy)

        logger.info(f"🔐 Unauthorized ({response.status_code}). Retrying {request.method} with Digest Authentication...")
        cseq, method = request.cseq
        branch = new_branch()
        request.set(challenge.header_name, self.authenticator.authorization(method, request.uri, challenge))
        request.set("CSeq", f"{cseq + 1} {method}")
        request.set("Via", f"SIP/2.0/UDP {self.local_ip}:{self.local_port};branch={branch};rport")
        # Keep the header order stable: Via first
        request.headers.insert(0, request.headers.pop())

        dialog = self.dialog
        if dialog and dialog.invite is request:
            dialog.local_cseq = cseq + 1
            dialog.invite_branch = branch

        return await self._send_request(request, addr, on_provisional, timeout)

    def close(self) -> None:
        """Close the signaling socket (full teardown only)."""
        if self._register_task:
            self._register_task.cancel()
            self._register_task = None
        for task in list(self._background):
            task.cancel()
        if self._transport:
            self._transport.close()
            self._transport = None
            logger.info("SIP client stopped")

    # ------------------------------------------------------------------
    # Inbound dispatch
    # ------------------------------------------------------------------

    def handle_datagram(self, data: bytes, addr: Address) -> None:
        text = data.decode('utf-8', errors='ignore')
        if not text.strip():
            return  # CRLF keepalive

        try:
            message = parse_sip_message(text)
        except ValueError as e:
            logger.warning(f"Dropping unparsable SIP message from {addr[0]}:{addr[1]}: {e}")
            return

        if message.is_response:
            self._handle_response(message)
            return

        logger.info(f"📥 Received request: {message.method} (Call-ID: {message.call_id})")
        try:
            if message.method == "INVITE":
                self.handle_inbound_invite(message, addr)
            elif message.method == "BYE":
                self.handle_bye(message, addr)
            elif message.method == "CANCEL":
                self.handle_cancel(message, addr)
            elif message.method == "ACK":
                logger.debug(f"ACK received for {message.call_id}")
            elif message.method == "OPTIONS":
                self._send(make_response(message, 200, "OK"), addr)
            else:
                self._send(make_response(message, 501, "Not Implemented"), addr)
        except TransportError as e:
            logger.error(f"Failed to answer {message.method} (Call-ID: {message.call_id}): {e}")

    def handle_inbound_invite(self, request: SipMessage, addr: Address) -> None:
        """
        Auto-answer an inbound INVITE if OPUS audio is offered, otherwise reject it with 488.
        """
        call_id = request.call_id
        dialog = self.dialog

        if dialog and dialog.call_id == call_id:
            if dialog.is_established:
                logger.info(f"Re-INVITE for call {call_id}, answering with our current offer")
                self._send(make_response(request, 200, "OK", to_tag=dialog.local_tag,
                                         body=self._local_sdp(), content_type="application/sdp"), addr)
            return

        if self.is_busy:
            logger.warning(f"Busy ({self.state.value}), rejecting inbound call {call_id}")
            self._send(make_response(request, 486, "Busy Here", to_tag=random_token()), addr)
            return

        logger.info("📞 Inbound call, checking offered codecs...")
        try:
            offer = parse_offer(request.body)
            if offer.audio is None:
                raise RejectedOffer("no OPUS audio offered")
        except RejectedOffer as e:
            logger.warning(f"Rejecting call {call_id}: {e}")
            self._send(make_response(request, 488, "Not Acceptable Here", to_tag=random_token()), addr)
            return

        from_header = request.get("from", "")
        contact = extract_uri(request.get("contact")) or extract_uri(from_header)
        dialog = Dialog(
            call_id=call_id,
            direction=Direction.INBOUND,
            local_address=(self.local_ip, self.local_port),
            local_header=f"{request.get('to', '')};tag={random_token()}",
            remote_header=from_header,
            request_uri=contact,
            contact=self.contact_uri,
            user_agent=self.settings.sip.user_agent,
            state=DialogState.OFFER_RECEIVED,
            remote_target=contact,
            peer_address=addr,
            remote_media=offer,
            invite=request,
        )
        self.dialog = dialog

        try:
            self._send(make_response(request, 100, "Trying"), addr)
            self.emit(InboundCall(call_id))
            self._send(make_response(request, 180, "Ringing", to_tag=dialog.local_tag), addr)

            logger.info("Answering with 200 OK and local OPUS SDP...")
            ok = make_response(request, 200, "OK", to_tag=dialog.local_tag,
                               body=self._local_sdp(), content_type="application/sdp")
            ok.headers.append(("Contact", f"<{self.contact_uri}>"))
            self._send(ok, addr)
        except TransportError:
            self._drop_dialog(dialog)
            raise

        dialog.set_state(DialogState.ESTABLISHED)
        logger.info(f"🎉 Inbound call {call_id} established")
        self.emit(SipCallEstablished(call_id, offer))

    def handle_bye(self, request: SipMessage, addr: Address) -> None:
        """Always answer 200 OK; end our call only if the Call-ID matches it."""
        self._send(make_response(request, 200, "OK"), addr)

        dialog = self.dialog
        if dialog and request.call_id and dialog.call_id == request.call_id:
            logger.info(f"📞 Call {dialog.call_id} terminated by remote party (BYE received)")
            self._drop_dialog(dialog)
            self.emit(SipCallEnded(dialog.call_id))
        else:
            logger.info(f"Received BYE for unknown Call-ID {request.call_id}, ignoring")

    def handle_cancel(self, request: SipMessage, addr: Address) -> None:
        dialog = self.dialog
        if not dialog or dialog.call_id != request.call_id:
            self._send(make_response(request, 481, "Call/Transaction Does Not Exist"), addr)
            return

        self._send(make_response(request, 200, "OK"), addr)
        if dialog.direction == Direction.INBOUND and not dialog.is_established and dialog.invite:
            logger.info(f"📞 Call {dialog.call_id} cancelled by remote party")
            self._send(make_response(dialog.invite, 487, "Request Terminated", to_tag=dialog.local_tag), addr)
            self._drop_dialog(dialog)
            self.emit(SipCallEnded(dialog.call_id))

    def _handle_response(self, response: SipMessage) -> None:
        try:
            cseq, method = response.cseq
        except ValueError as e:
            logger.warning(f"Dropping response without usable CSeq: {e}")
            return

        queue = self._pending.get((response.call_id, cseq, method))
        if queue:
            queue.put_nowait(response)
            return

        dialog = self.dialog
        if (method == "INVITE" and 200 <= response.status_code < 300 and dialog
                and dialog.call_id == response.call_id and dialog.is_established):
            # Retransmitted 200 OK: our ACK was lost
            self._send(dialog.create_ack(response), self._dialog_destination(dialog))
            return
        logger.debug(f"No transaction waiting for {response.status_code} to '{cseq} {method}'")

    # ------------------------------------------------------------------
    # Outbound helpers
    # ------------------------------------------------------------------

    def _handle_invite_final(self, dialog: Dialog, response: SipMessage) -> Dialog:
        status, reason = response.status_code, response.status_text
        destination = self._dialog_destination(dialog)

        if not 200 <= status < 300:
            try:
                self._send(dialog.create_ack(response), destination)
            except TransportError as e:
                logger.error(f"Failed to ACK {status} for {dialog.call_id}: {e}")
            return self._fail_call(dialog, status, reason)

        dialog.update_from_response(response)
        self._send(dialog.create_ack(response), destination)

        if self.dialog is not dialog or dialog.state == DialogState.TERMINATING:
            # Our CANCEL crossed the 200 OK
            self._send(dialog.create_bye(), destination)
            return self._fail_call(dialog, 487, "Request Terminated")

        try:
            offer = parse_offer(response.body)
        except RejectedOffer as e:
            logger.error(f"Call {dialog.call_id} answered without usable media: {e}")
            self._send(dialog.create_bye(), destination)
            return self._fail_call(dialog, 488, "Not Acceptable Here")

        dialog.remote_media = offer
        dialog.set_state(DialogState.ESTABLISHED)
        logger.info(f"🎉 Call established: {status} {reason} (Call-ID: {dialog.call_id})")
        self.emit(SipCallEstablished(dialog.call_id, offer))
        return dialog

    def _fail_call(self, dialog: Dialog, status: int, reason: str) -> NoReturn:
        logger.error(f"❌ Call failed: {status} {reason} (Call-ID: {dialog.call_id})")
        self._drop_dialog(dialog)
        self.emit(SipCallFailed(status, reason, dialog.call_id))
        raise CallFailure(status, reason, dialog.call_id)

    def _drop_dialog(self, dialog: Dialog) -> None:
        dialog.hangup()
        if self.dialog is dialog:
            self.dialog = None

    def _dialog_destination(self, dialog: Dialog) -> Address:
        if dialog.direction == Direction.INBOUND and dialog.peer_address:
            return dialog.peer_address
        return self.registrar

    async def _send_bye(self, dialog: Dialog) -> None:
        try:
            response = await self._request_with_auth(
                dialog.create_bye(), self._dialog_destination(dialog),
                timeout=self.settings.calls.request_timeout)
            if response is not None:
                logger.info(f"BYE answered: {response.status_code} {response.status_text}")
        except TransportError as e:
            logger.error(f"Failed to send BYE for {dialog.call_id}: {e}")
        finally:
            self._drop_dialog(dialog)

    async def _send_cancel(self, dialog: Dialog) -> None:
        try:
            response = await self._send_request(
                dialog.create_cancel(), self._dialog_destination(dialog),
                timeout=self.settings.calls.request_timeout)
            if response is not None:
                logger.info(f"CANCEL answered: {response.status_code} {response.status_text}")
        except TransportError as e:
            logger.error(f"Failed to send CANCEL for {dialog.call_id}: {e}")
            self._drop_dialog(dialog)

    async def _register_loop(self, expires: int) -> None:
        while True:
            await self._send_register(expires)
            await asyncio.sleep(expires)

    async def _send_register(self, expires: int) -> bool:
        action = "REGISTER" if expires else "Unregister"
        if expires:
            self.registration_state = RegistrationState.REGISTERING
            logger.info(f"Registering with {self.settings.sip.domain}")

        try:
            response = await self._request_with_auth(
                self._create_register(expires), timeout=self.settings.calls.request_timeout)
        except TransportError as e:
            logger.error(f"❌ {action} failed: {e}")
            self.registration_state = RegistrationState.FAILED
            return False

        if response is not None and 200 <= response.status_code < 300:
            logger.info(f"✅ {action} successful")
            self.registration_state = RegistrationState.REGISTERED if expires else RegistrationState.IDLE
            return True

        status = f"{response.status_code} {response.status_text}" if response is not None else "No Response"
        logger.error(f"❌ {action} failed: {status}")
        self.registration_state = RegistrationState.FAILED
        return False

    def _create_register(self, expires: int) -> SipMessage:
        request = SipMessage(method="REGISTER", uri=f"sip:{self.settings.sip.domain}")
        request.headers.extend([
            ("Via", f"SIP/2.0/UDP {self.local_ip}:{self.local_port};branch={new_branch()};rport"),
            ("Max-Forwards", "70"),
            ("From", f"<{self.aor}>;tag={random_token()}"),
            ("To", f"<{self.aor}>"),
            ("Call-ID", random_token()),
            ("CSeq", "1 REGISTER"),
            ("Contact", f"<{self.contact_uri}>;expires={expires}"),
            ("Expires", str(expires)),
            ("User-Agent", self.settings.sip.user_agent),
        ])
        return request

    def _local_sdp(self) -> str:
        return build_offer(int(time.time() * 1000), self.local_ip,
                           self.settings.media.rtp_port, self.settings.media.video_port)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def _request_with_auth(self, request: SipMessage, addr: Optional[Address] = None,
                                 on_provisional: Optional[Callable[[SipMessage], None]] = None,
                                 timeout: Optional[float] = None) -> Optional[SipMessage]:
        """Send a request and answer at most one digest challenge for it."""
        response = await self._send_request(request, addr, on_provisional, timeout)
        if response is None or not self._is_challenge(response):
            return response
        dialog = self.dialog
        if request.method == "INVITE" and dialog and dialog.invite is request:
            # The challenge is a non-2xx final: ACK it on the original transaction
            self._send(dialog.create_ack(response), addr)
        try:
            return await self.retry_with_digest_auth(request, response, addr, on_provisional, timeout)
        except AuthRequired as e:
            logger.error(f"Cannot answer challenge for {request.method} (Call-ID: {request.call_id}): {e}")
            return response

    @staticmethod
    def _is_challenge(response: SipMessage) -> bool:
        if response.status_code == 401:
            return response.get("www-authenticate") is not None
        if response.status_code == 407:
            return response.get("proxy-authenticate") is not None
        return False

    async def _send_request(self, request: SipMessage, addr: Optional[Address] = None,
                            on_provisional: Optional[Callable[[SipMessage], None]] = None,
                            timeout: Optional[float] = None) -> Optional[SipMessage]:
        """Send a request and wait for its final response; None on timeout."""
        cseq, method = request.cseq
        key = (request.call_id, cseq, method)
        queue: asyncio.Queue = asyncio.Queue()
        self._pending[key] = queue

        timeout = timeout or self.settings.calls.request_timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            self._send(request, addr)
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                response = await asyncio.wait_for(queue.get(), remaining)
                if response.status_code < 200:
                    if on_provisional:
                        on_provisional(response)
                    continue
                return response
        except asyncio.TimeoutError:
            logger.warning(f"Timeout waiting for response to '{cseq} {method}' (Call-ID: {request.call_id})")
            return None
        finally:
            self._pending.pop(key, None)

    def _send(self, message: SipMessage, addr: Optional[Address] = None) -> None:
        """Send SIP message to `addr` (the registrar by default)."""
        if not self._transport or self._transport.is_closing():
            raise TransportError("SIP client not started or is stopped")
        target = addr or self.registrar
        logger.debug(f"--- OUTGOING SIP MESSAGE to {target[0]}:{target[1]} ---\n{message!r}")
        try:
            self._transport.sendto(message.to_bytes(), target)
        except OSError as e:
            raise TransportError(f"Failed to send {message!r} to {target}: {e}") from e

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
