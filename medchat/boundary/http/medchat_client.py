"""
MedChat REST API client.

Implements the session directory, message store and session membership
contracts over the MedChat backend REST API:

    GET    /chat/sessions                      list summaries
    POST   /chat/sessions                      create
    GET    /chat/sessions/{id}                 full summary
    PATCH  /chat/sessions/{id}                 rename
    DELETE /chat/sessions/{id}                 delete
    GET    /chat/sessions/{id}/messages        history
    POST   /chat/sessions/{id}/messages        send (streamed answer)
    GET    /chat/sessions/{id}/patients        session patients
    GET    /chat/sessions/{id}/documents       documents used in session

HTTP failures are mapped onto the engine exception hierarchy. Idempotent
reads are retried on transport errors.

Dependencies: httpx, tenacity, medchat.boundary.http.stream_decoder
System role: Production backend collaborator
"""

import logging
import re
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, AsyncIterator, TypeVar
from urllib.parse import quote

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from medchat.boundary.contracts import MessageStore, SessionDirectory, SessionMembership
from medchat.boundary.http.stream_decoder import StreamDecoder
from medchat.core.exceptions import (
    ApiError,
    AuthorizationError,
    CapabilityUnavailableError,
    NetworkError,
    RequestTimeoutError,
    SessionNotFoundError,
    StreamError,
)
from medchat.core.transcript_rules import default_session_title
from medchat.models.context import ChatMode, ContextPayload, MessageMetadata, ReferenceScope
from medchat.models.message import ChatMessage
from medchat.models.session import (
    ChatSessionSummary,
    RetrievalSummary,
    SessionDocument,
    SessionPatient,
)
from medchat.models.streaming import StreamEvent

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

SESSION_PATH_PATTERN = re.compile(r"/chat/sessions/([^/?]+)")
TokenProvider = Callable[[], Awaitable[str | None]]


class MedChatApiClient(SessionDirectory, MessageStore, SessionMembership):
    """
    Async REST client for the MedChat backend.

    Owns an httpx.AsyncClient unless one is injected. Use as an async context
    manager or call aclose() when done.
    """

    def __init__(
        self,
        base_url: str,
        auth_token: str | None = None,
        clinic_id: str | None = None,
        request_timeout: float = 30.0,
        max_retries: int = 3,
        retry_initial_wait: float = 0.5,
        message_history_limit: int = 200,
        session_list_limit: int = 50,
        token_provider: TokenProvider | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize API client.

        Args:
            base_url: API base URL
            auth_token: Static bearer token, used when no token_provider is given
            clinic_id: Clinic sent when creating sessions
            request_timeout: Per-request timeout in seconds
            max_retries: Attempts for idempotent reads
            retry_initial_wait: First backoff delay in seconds
            message_history_limit: Messages fetched per history call
            session_list_limit: Sessions fetched per list call
            token_provider: Async callable returning the current bearer token
            http_client: Pre-configured client (tests inject a MockTransport)
        """
        self._auth_token = auth_token
        self._token_provider = token_provider
        self._clinic_id = clinic_id
        self._request_timeout = request_timeout
        self._max_retries = max_retries
        self._retry_initial_wait = retry_initial_wait
        self._message_history_limit = message_history_limit
        self._session_list_limit = session_list_limit
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=request_timeout,
        )

    async def __aenter__(self) -> "MedChatApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Session directory
    # ------------------------------------------------------------------

    async def list_sessions(
        self,
        patient_filter: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[ChatSessionSummary]:
        """
        List session summaries.

        Args:
            patient_filter: Restrict to one patient; None lists every session
            limit: Page size, defaults to session_list_limit
            offset: Pagination offset

        Returns:
            list[ChatSessionSummary]: Summaries in backend order
        """
        params: dict[str, Any] = {"limit": limit or self._session_list_limit}
        if patient_filter is not None:
            params["patientId"] = patient_filter
        if offset is not None:
            params["offset"] = offset

        data = await self._get_json("/chat/sessions", params=params)
        raw_sessions = self._items(data, "sessions")
        sessions = [self._parse(ChatSessionSummary, raw, "list_sessions") for raw in raw_sessions]

        logger.info(
            f"{__name__}:list_sessions - Loaded {len(sessions)} sessions",
            extra={"patient_filter": patient_filter},
        )
        return sessions

    async def create_session(
        self,
        patient_id: str | None,
        title: str | None,
        default_context: ContextPayload | None,
        patient_ids: list[str] | None = None,
    ) -> str:
        """
        Create a session.

        Args:
            patient_id: Primary patient (legacy single-patient field)
            title: Session title, defaults to 'Consulta DD/MM/YYYY'
            default_context: Context the session starts in
            patient_ids: All selected patients for multi-patient sessions

        Returns:
            str: Backend-issued session id
        """
        body = self._build_create_body(patient_id, title, default_context, patient_ids)
        response = await self._request("POST", "/chat/sessions", json=body)
        data = self._json(response)

        if isinstance(data, str):
            session_id = data
        elif isinstance(data, dict) and (data.get("sessionId") or data.get("id")):
            session_id = str(data.get("sessionId") or data.get("id"))
        else:
            raise ApiError("Resposta inválida ao criar sessão.", status_code=response.status_code)

        logger.info(
            f"{__name__}:create_session - Created session",
            extra={"session_id": session_id, "patient_count": len(body.get("patientIds", []))},
        )
        return session_id

    def _build_create_body(
        self,
        patient_id: str | None,
        title: str | None,
        default_context: ContextPayload | None,
        patient_ids: list[str] | None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "clinicId": self._clinic_id,
            "title": title or default_session_title(datetime.now()),
        }

        if patient_ids:
            merged = list(patient_ids)
            if patient_id is not None and patient_id not in merged:
                merged.insert(0, patient_id)
            body["patientIds"] = merged
        elif patient_id is not None:
            body["patientIds"] = [patient_id]
            body["patientId"] = patient_id

        if default_context is not None:
            body["defaultMode"] = default_context.mode.value
            body["defaultReferenceScope"] = (
                default_context.reference_scope or ReferenceScope.GLOBAL_DOCTOR
            ).value
            body["defaultContext"] = default_context.to_api()
        else:
            body["defaultMode"] = ChatMode.PATIENT_AND_REFERENCES.value
            body["defaultReferenceScope"] = ReferenceScope.GLOBAL_DOCTOR.value
        return body

    async def get_session(self, session_id: str) -> ChatSessionSummary:
        """
        Fetch one session including default context and retrieval summary.

        Raises:
            SessionNotFoundError: Session does not exist
            CapabilityUnavailableError: Backend does not offer this endpoint
        """
        data = await self._get_json(f"/chat/sessions/{quote(session_id, safe='')}")
        if not isinstance(data, dict):
            raise ApiError("Resposta inválida ao carregar sessão.")

        payload = {"id": session_id, **data}
        summary = self._parse(ChatSessionSummary, payload, "get_session")
        if summary.retrieval_summary is None:
            summary = summary.model_copy(update={"retrieval_summary": RetrievalSummary()})
        return summary

    async def rename_session(self, session_id: str, title: str) -> ChatSessionSummary:
        """Rename a session; partial responses are completed with the request values."""
        response = await self._request(
            "PATCH",
            f"/chat/sessions/{quote(session_id, safe='')}",
            json={"title": title},
        )
        data = self._json(response)
        payload = {"id": session_id, "title": title}
        if isinstance(data, dict):
            payload.update({key: value for key, value in data.items() if value is not None})
        return self._parse(ChatSessionSummary, payload, "rename_session")

    async def delete_session(self, session_id: str) -> None:
        """Delete a session. A 204 answer has no body."""
        await self._request("DELETE", f"/chat/sessions/{quote(session_id, safe='')}")
        logger.info(f"{__name__}:delete_session - Deleted session", extra={"session_id": session_id})

    # ------------------------------------------------------------------
    # Message store
    # ------------------------------------------------------------------

    async def get_messages(self, session_id: str, limit: int | None = None) -> list[ChatMessage]:
        """
        Fetch the ordered history of a session.

        Args:
            session_id: Session UUID
            limit: Maximum messages, defaults to message_history_limit

        Returns:
            list[ChatMessage]: Messages with roles normalized to user/assistant
        """
        data = await self._get_json(
            f"/chat/sessions/{quote(session_id, safe='')}/messages",
            params={"limit": limit or self._message_history_limit},
        )
        raw_messages = self._items(data, "messages")
        return [
            self._parse(
                ChatMessage,
                {**raw, "sessionId": session_id} if isinstance(raw, dict) else raw,
                "get_messages",
            )
            for raw in raw_messages
        ]

    async def stream_send(
        self,
        session_id: str,
        content: str,
        context: ContextPayload,
        metadata: MessageMetadata | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Send a user message and yield the streamed answer.

        Args:
            session_id: Session UUID
            content: User message
            context: Resolved context payload
            metadata: Selected documents to persist with the user message

        Yields:
            StreamEvent: Content, sources, done and error events in receipt order

        Raises:
            SessionNotFoundError: Session does not exist
            NetworkError: Transport failure before or during the stream
        """
        body: dict[str, Any] = {
            "query": content,
            "content": content,
            "mode": context.mode.value,
            "referenceScope": (context.reference_scope or ReferenceScope.GLOBAL_DOCTOR).value,
            "context": context.to_api(),
            "options": {"stream": True},
        }
        if metadata is not None:
            body["metadata"] = metadata.to_api()

        headers = await self._headers()
        path = f"/chat/sessions/{quote(session_id, safe='')}/messages"

        try:
            async with self._client.stream(
                "POST",
                path,
                json=body,
                headers=headers,
                timeout=httpx.Timeout(self._request_timeout, read=None),
            ) as response:
                if response.is_error:
                    await response.aread()
                    raise self._map_error(response)

                content_type = response.headers.get("content-type", "")
                decoder = StreamDecoder(
                    is_sse="text/event-stream" in content_type,
                    session_id=session_id,
                )
                logger.info(
                    f"{__name__}:stream_send - Stream opened",
                    extra={"session_id": session_id, "content_type": content_type},
                )

                async for line in response.aiter_lines():
                    for event in decoder.feed(line):
                        yield event
                    if decoder.finished:
                        return
                for event in decoder.finish():
                    yield event

        except httpx.TimeoutException as e:
            raise RequestTimeoutError("stream_send", self._request_timeout) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Falha de conexão: {e}", operation="stream_send") from e
        except httpx.HTTPError as e:
            raise StreamError(
                f"Falha ao ler a resposta: {e}",
                session_id=session_id,
                details={"error_type": type(e).__name__},
            ) from e

    # ------------------------------------------------------------------
    # Session membership
    # ------------------------------------------------------------------

    async def get_patients(self, session_id: str) -> list[SessionPatient]:
        """Patients attached to a session, ordered by the backend."""
        data = await self._get_json(f"/chat/sessions/{quote(session_id, safe='')}/patients")
        if not isinstance(data, list):
            return []
        return [self._parse(SessionPatient, raw, "get_patients") for raw in data]

    async def get_documents(
        self,
        session_id: str,
        patient_filter: str | None = None,
    ) -> list[SessionDocument]:
        """
        Documents cited in a session.

        Accepts both the split response ({"patient_docs": [...], "ref_docs": [...]})
        and the legacy flat list.

        Args:
            session_id: Session UUID
            patient_filter: Restrict patient documents to one patient

        Returns:
            list[SessionDocument]: Patient documents first, then references
        """
        params = {"patientId": patient_filter} if patient_filter is not None else None
        data = await self._get_json(
            f"/chat/sessions/{quote(session_id, safe='')}/documents",
            params=params,
        )

        if isinstance(data, dict) and any(
            key in data for key in ("patient_docs", "ref_docs", "patient_docs_count", "ref_docs_count")
        ):
            patient_docs = [self._document(raw) for raw in data.get("patient_docs") or []]
            ref_docs = [self._document(raw, reference=True) for raw in data.get("ref_docs") or []]
            return patient_docs + ref_docs

        raw_docs = self._items(data, "documents")
        return [self._document(raw) for raw in raw_docs]

    @classmethod
    def _document(cls, raw: Any, reference: bool = False) -> SessionDocument:
        if not isinstance(raw, dict):
            return cls._parse(SessionDocument, raw, "get_documents")
        document_id = raw.get("id") or raw.get("document_id")
        return cls._parse(
            SessionDocument,
            {
                "id": str(document_id) if document_id is not None else None,
                "title": raw.get("title") or raw.get("name") or "",
                "patient_id": None if reference else (raw.get("patient_id") or raw.get("patientId")),
                "d_type": raw.get("d_type") or raw.get("dType") or "KNOWLEDGE_PDF",
                "source": raw.get("source"),
                "d_status": raw.get("d_status") or raw.get("dStatus") or "READY",
                "created_at": raw.get("created_at") or raw.get("createdAt"),
            },
            "get_documents",
        )

    # ------------------------------------------------------------------
    # Transport helpers
    # ------------------------------------------------------------------

    async def _headers(self) -> dict[str, str]:
        token = await self._token_provider() if self._token_provider else self._auth_token
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> httpx.Response:
        headers = await self._headers()
        try:
            response = await self._client.request(
                method,
                path,
                params=params,
                json=json,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(f"{method} {path}", self._request_timeout) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Falha de conexão: {e}", operation=f"{method} {path}") from e
        except httpx.HTTPError as e:
            raise ApiError(f"Falha na requisição: {e}", details={"operation": f"{method} {path}"}) from e

        if response.is_error:
            raise self._map_error(response)
        return response

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(NetworkError),
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential_jitter(
                initial=self._retry_initial_wait,
                max=8,
                jitter=self._retry_initial_wait,
            ),
            before_sleep=lambda retry_state: logger.warning(
                f"{__name__}:_get_json - Retry {retry_state.attempt_number}/{self._max_retries} for {path}"
            ),
            reraise=True,
        ):
            with attempt:
                response = await self._request("GET", path, params=params)
        return self._json(response)

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ApiError(
                "Resposta inválida do servidor.",
                status_code=response.status_code,
            ) from e

    @staticmethod
    def _items(data: Any, key: str) -> list[Any]:
        """Records of a bare-list or wrapped response."""
        if data is None:
            return []
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            items = data.get(key) or []
            if isinstance(items, list):
                return items
        raise ApiError("Resposta inválida do servidor.", code="INVALID_PAYLOAD")

    @staticmethod
    def _parse(model: type[ModelT], raw: Any, operation: str) -> ModelT:
        """Validate one backend record, translating schema violations into ApiError."""
        try:
            return model.model_validate(raw)
        except PydanticValidationError as e:
            logger.warning(
                f"{__name__}:_parse - Invalid {model.__name__} payload",
                extra={"operation": operation, "error_count": e.error_count()},
            )
            raise ApiError(
                "Resposta inválida do servidor.",
                code="INVALID_PAYLOAD",
                details={"operation": operation},
            ) from e

    @staticmethod
    def _map_error(response: httpx.Response) -> Exception:
        """Translate a non-success response into an engine exception."""
        status = response.status_code
        message = response.reason_phrase or "Erro desconhecido"
        code = "UNKNOWN_ERROR"
        try:
            body = response.json()
            if isinstance(body, dict):
                message = body.get("error") or message
                code = body.get("code") or code
        except ValueError:
            pass

        path = response.request.url.path
        session_match = SESSION_PATH_PATTERN.search(path)

        if status == 401:
            return AuthorizationError(
                "Não autorizado. Por favor, faça login novamente.", status_code=status, code=code
            )
        if status == 403:
            if code == "CLINIC_MISMATCH":
                text = "Erro de autorização: clínica não corresponde."
            elif code == "SESSION_OWNERSHIP_MISMATCH":
                text = "Você não tem permissão para acessar esta sessão."
            else:
                text = "Você não tem permissão para acessar este recurso."
            return AuthorizationError(text, status_code=status, code=code)
        if status == 404:
            if code == "PATIENT_NOT_FOUND":
                return ApiError("Paciente não encontrado.", status_code=status, code=code)
            if code == "GET_SESSION_ENDPOINT_NOT_FOUND":
                return CapabilityUnavailableError(
                    "Endpoint indisponível no servidor.", status_code=status, code=code
                )
            if code == "SESSION_NOT_FOUND" or session_match:
                return SessionNotFoundError(
                    session_match.group(1) if session_match else "",
                    details={"status_code": status},
                )
            return ApiError("Recurso não encontrado.", status_code=status, code=code)
        if status in (405, 501):
            return CapabilityUnavailableError(
                "Endpoint indisponível no servidor.", status_code=status, code=code
            )
        if status == 400:
            return ApiError(
                message or "Requisição inválida. Verifique os dados enviados.",
                status_code=status,
                code=code,
            )
        if status == 500:
            if code in ("EMBEDDING_ERROR", "VECTOR_SEARCH_ERROR"):
                text = "Erro ao processar a consulta. Tente novamente."
            else:
                text = "Erro interno do servidor. Tente novamente em alguns instantes."
            return ApiError(text, status_code=status, code=code)
        if status == 502:
            if code == "CLAUDE_ERROR":
                text = "Serviço de IA indisponível. Tente novamente."
            else:
                text = "Erro ao gerar resposta. Tente novamente."
            return ApiError(text, status_code=status, code=code)
        return ApiError(
            message or "Erro ao processar a requisição.", status_code=status, code=code
        )
