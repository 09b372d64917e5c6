"""
Middleware chain HTTP client.

Requests to the authorization server and the PDS pass through a chain of
middleware before reaching aiohttp. Each middleware may alter the request on
the way in and inspect the response on the way out; returning a new request
alongside the response asks the chain to send it again (used for the DPoP
nonce handshake).

Request bodies are plain dictionaries of form fields so that a repeated
request can be re-signed without rebuilding aiohttp payload objects.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging
import time
from types import TracebackType
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generator,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Union,
)

from aiohttp import ClientResponse, ClientSession, hdrs
from aiohttp.typedefs import StrOrURL
from jwcrypto import jwk
from multidict import CIMultiDictProxy
from yarl import URL

from social.graze.atoauth.app.metrics import MetricsClient
from social.graze.atoauth.atproto.jwt import (
    CLIENT_ASSERTION_TYPE,
    create_client_assertion_claims,
    create_dpop_jwt,
)
from social.graze.atoauth.atproto.keyset import KeySet

RequestFunc = Callable[..., Awaitable[ClientResponse]]

logger = logging.getLogger(__name__)


class _LoggerStub(Protocol):
    """_Logger defines which methods logger object should have."""

    @abstractmethod
    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        pass

    @abstractmethod
    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        pass

    @abstractmethod
    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        pass


_LoggerType = Union[_LoggerStub, logging.Logger]


@dataclass
class ChainRequest:
    method: str
    url: StrOrURL
    headers: dict[str, Any] | None = None
    trace_request_ctx: dict[str, Any] | None = None
    kwargs: dict[str, Any] | None = None

    @staticmethod
    def from_chain_request(request: "ChainRequest") -> "ChainRequest":
        kwargs = None
        if request.kwargs is not None:
            kwargs = dict(request.kwargs)
            if isinstance(kwargs.get("data"), dict):
                kwargs["data"] = dict(kwargs["data"])

        return ChainRequest(
            method=request.method,
            url=request.url,
            headers=dict(request.headers) if request.headers is not None else None,
            trace_request_ctx=request.trace_request_ctx,
            kwargs=kwargs,
        )


@dataclass
class ChainResponse:
    status: int
    headers: CIMultiDictProxy[str]
    body: str | bytes | dict[str, Any] | None = None

    @staticmethod
    async def from_aiohttp_response(response: ClientResponse) -> "ChainResponse":
        status = response.status
        headers = response.headers

        content_type = response.headers.get(hdrs.CONTENT_TYPE, "")

        if content_type.startswith("application/json"):
            return ChainResponse(
                status=status, headers=headers, body=await response.json()
            )
        elif content_type.startswith("text/"):
            return ChainResponse(
                status=status, headers=headers, body=await response.text()
            )
        else:
            return ChainResponse(
                status=status, headers=headers, body=await response.read()
            )

    def body_contains(self, text: str) -> bool:
        if self.body is None:
            return False

        if isinstance(self.body, str):
            return text in self.body

        elif isinstance(self.body, bytes):
            return text.encode("utf-8") in self.body

        elif isinstance(self.body, dict):
            return text in self.body

        return False

    def body_matches_kv(self, key: str, value: Any) -> bool:
        if self.body is None:
            return False

        return (
            isinstance(self.body, dict) and key in self.body and self.body[key] == value
        )

    @property
    def error(self) -> Optional[str]:
        """The OAuth `error` code of a JSON error body."""
        if isinstance(self.body, dict):
            error = self.body.get("error")
            if isinstance(error, str):
                return error
        return None

    @property
    def error_description(self) -> Optional[str]:
        if isinstance(self.body, dict):
            description = self.body.get("error_description")
            if isinstance(description, str):
                return description
        return None


NextChainResponseCallbackType = (
    Tuple[ClientResponse, ChainResponse]
    | Tuple[ClientResponse, ChainResponse, ChainRequest]
)

NextChainCallbackType = Callable[
    [ChainRequest], Awaitable[NextChainResponseCallbackType]
]


class RequestMiddlewareBase(ABC):
    @abstractmethod
    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        pass

    def handle_gen(self, next: NextChainCallbackType) -> NextChainCallbackType:
        async def next_invoke(request: ChainRequest) -> NextChainResponseCallbackType:
            return await self.handle(next, request)

        return next_invoke


class MetricsMiddleware(RequestMiddlewareBase):
    """Records the count and duration of every outgoing request."""

    def __init__(self, metrics_client: MetricsClient) -> None:
        super().__init__()
        self._metrics_client = metrics_client

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        start_time = time.perf_counter()
        tags = {
            "method": request.method.upper(),
            "host": URL(str(request.url)).host or "",
        }
        try:
            response = await next(request)
        except Exception:
            self._metrics_client.increment(
                "client.request.exception", 1, tag_dict=tags
            )
            raise
        finally:
            self._metrics_client.timer(
                "client.request.time",
                time.perf_counter() - start_time,
                tag_dict=tags,
            )

        self._metrics_client.increment(
            "client.request.count",
            1,
            tag_dict={**tags, "status": str(response[1].status)},
        )
        return response


class GenerateClaimAssertionMiddleware(RequestMiddlewareBase):
    """
    Adds a `private_key_jwt` client assertion to form requests.

    A new assertion, with a fresh `jti`, is signed for every attempt.
    """

    def __init__(
        self,
        key_set: KeySet,
        client_id: str,
        audience: str,
        algorithms: Union[str, Sequence[str]],
    ) -> None:
        super().__init__()
        self._key_set = key_set
        self._client_id = client_id
        self._audience = audience
        self._algorithms = algorithms

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:

        if request.kwargs is None:
            return await next(request)

        data: Optional[Dict[str, Any]] = request.kwargs.get("data", None)
        if data is None:
            data = {}

        claims = create_client_assertion_claims(self._client_id, self._audience)
        data["client_assertion_type"] = CLIENT_ASSERTION_TYPE
        data["client_assertion"] = self._key_set.sign(claims, self._algorithms)

        request.kwargs["data"] = data

        return await next(request)


def dpop_htu(url: StrOrURL) -> str:
    """The `htu` value for a URL: the request URI without query and fragment."""
    return str(URL(str(url)).with_query(None).with_fragment(None))


def dpop_origin(url: StrOrURL) -> str:
    return str(URL(str(url)).origin())


class GenerateDpopMiddleware(RequestMiddlewareBase):
    """
    Adds a DPoP proof to every request.

    Nonces issued by a server (`DPoP-Nonce` header) are remembered per origin
    in `nonces`, which callers share across requests to the same server. When
    the server rejects a proof with `use_dpop_nonce` and supplies a new nonce,
    the request is sent once more with a proof carrying that nonce.
    """

    def __init__(
        self,
        dpop_key: jwk.JWK,
        nonces: Dict[str, str],
        access_token: Optional[str] = None,
    ) -> None:
        super().__init__()
        self._dpop_key = dpop_key
        self._dpop_public_key = dpop_key.export_public(as_dict=True)
        self._nonces = nonces
        self._access_token = access_token

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        origin = dpop_origin(request.url)
        sent_nonce = self._nonces.get(origin)

        if request.headers is None:
            request.headers = {}
        request.headers["DPoP"] = create_dpop_jwt(
            self._dpop_key,
            request.method,
            dpop_htu(request.url),
            public_key_dict=self._dpop_public_key,
            nonce=sent_nonce,
            access_token=self._access_token,
        )

        response = await next(request)
        client_response = response[0]
        chain_response = response[1]
        new_request = None
        if len(response) == 3:
            new_request = response[2]

        received_nonce = chain_response.headers.get("DPoP-Nonce")
        if received_nonce:
            self._nonces[origin] = received_nonce

        if (
            chain_response.status in (400, 401)
            and self._nonce_required(chain_response)
            and received_nonce
            and received_nonce != sent_nonce
            and new_request is None
        ):
            logger.debug("Retrying %s %s with a new DPoP nonce", request.method, dpop_htu(request.url))
            new_request = ChainRequest.from_chain_request(request)

        if new_request is None:
            return client_response, chain_response
        return client_response, chain_response, new_request

    @staticmethod
    def _nonce_required(chain_response: ChainResponse) -> bool:
        # Authorization servers report it in the body, resource servers in
        # the WWW-Authenticate challenge.
        if chain_response.body_matches_kv("error", "use_dpop_nonce"):
            return True
        challenge = chain_response.headers.get(hdrs.WWW_AUTHENTICATE, "")
        return "use_dpop_nonce" in challenge


class EndOfLineChainMiddleware:
    def __init__(
        self,
        request_func: RequestFunc,
        logger: _LoggerType,
        raise_for_status: bool = False,
    ) -> None:
        super().__init__()
        self._request_func = request_func
        self._raise_for_status = raise_for_status
        self._logger = logger

    async def handle(self, request: ChainRequest) -> NextChainResponseCallbackType:

        # Headers and bodies carry proofs, assertions and tokens.
        self._logger.debug(f"Making request: {request.method} {dpop_htu(request.url)}")

        response: ClientResponse = await self._request_func(
            request.method.lower(),
            request.url,
            headers=request.headers,
            trace_request_ctx={
                **(request.trace_request_ctx or {}),
            },
            **(request.kwargs or {}),
        )

        if self._raise_for_status:
            response.raise_for_status()

        return response, await ChainResponse.from_aiohttp_response(response)


class ChainMiddlewareContext:
    def __init__(
        self,
        chain_callback: NextChainCallbackType,
        chain_request: ChainRequest,
        logger: _LoggerType,
        raise_for_status: bool = False,
        attempt_max: int = 3,
    ) -> None:
        self._chain_callback = chain_callback
        self._chain_request = chain_request
        self._logger = logger
        self._raise_for_status = raise_for_status

        self._chain_response: ChainResponse | None = None
        self.client_response: ClientResponse | None = None

        self._attempt_max = attempt_max

    async def _do_request(self) -> Tuple[ClientResponse, ChainResponse]:
        current_attempt = 0

        chain_request = self._chain_request

        while True:
            current_attempt += 1

            self._logger.debug(
                f"Attempt {current_attempt} out of {self._attempt_max}"
            )

            response = await self._chain_callback(chain_request)
            client_response = response[0]
            chain_response = response[1]
            new_request = None
            if len(response) == 3:
                new_request = response[2]

            if self.client_response is not None and not self.client_response.closed:
                self.client_response.close()

            self._chain_response = chain_response
            self.client_response = client_response

            if new_request is None:
                return client_response, chain_response

            if current_attempt >= self._attempt_max:
                self._logger.warning(
                    f"Giving up after {current_attempt} attempts: {chain_request.method} {dpop_htu(chain_request.url)}"
                )
                return client_response, chain_response

            chain_request = new_request

            if self._raise_for_status:
                client_response.raise_for_status()

    def __await__(self) -> Generator[Any, None, Tuple[ClientResponse, ChainResponse]]:
        return self.__aenter__().__await__()

    async def __aenter__(self) -> Tuple[ClientResponse, ChainResponse]:
        return await self._do_request()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self.client_response is not None and not self.client_response.closed:
            self.client_response.close()


class ChainMiddlewareClient:
    def __init__(
        self,
        client_session: ClientSession | None = None,
        logger: _LoggerType | None = None,
        middleware: Sequence[RequestMiddlewareBase] | None = None,
        raise_for_status: bool = False,
        *args: Any,
        **kwargs: Any,
    ) -> None:
        if client_session is not None:
            client = client_session
            closed = None
        else:
            client = ClientSession(*args, **kwargs)
            closed = False

        self._middleware = middleware

        self._client = client
        self._closed = closed

        self._logger: _LoggerType = logger or logging.getLogger("aiohttp_chain")
        self._raise_for_status = raise_for_status

    def request(
        self,
        method: str,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        return self._make_request(
            method=method,
            url=url,
            raise_for_status=raise_for_status,
            **kwargs,
        )

    def get(
        self,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        return self._make_request(
            method=hdrs.METH_GET,
            url=url,
            raise_for_status=raise_for_status,
            **kwargs,
        )

    def post(
        self,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        return self._make_request(
            method=hdrs.METH_POST,
            url=url,
            raise_for_status=raise_for_status,
            **kwargs,
        )

    async def close(self) -> None:
        await self._client.close()
        self._closed = True

    def _make_request(
        self,
        method: str,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        chain_request = ChainRequest(
            method=method,
            url=url,
            headers=kwargs.pop("headers", None) or {},
            trace_request_ctx=kwargs.pop("trace_request_ctx", None),
            kwargs=kwargs,
        )

        if raise_for_status is None:
            raise_for_status = self._raise_for_status

        end_of_line_middleware = EndOfLineChainMiddleware(
            request_func=self._client.request,
            logger=self._logger,
            raise_for_status=raise_for_status,
        )

        chain_callback: NextChainCallbackType = end_of_line_middleware.handle

        full_middleware_chain = reversed(self._middleware or [])

        for mw in full_middleware_chain:
            chain_callback = mw.handle_gen(chain_callback)

        return ChainMiddlewareContext(
            chain_callback=chain_callback,
            chain_request=chain_request,
            logger=self._logger,
            raise_for_status=raise_for_status,
        )

    async def __aenter__(self) -> "ChainMiddlewareClient":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    def __del__(self) -> None:
        if getattr(self, "_closed", None) is None:
            # in case object was not initialized (__init__ raised an exception)
            return

        if not self._closed:
            self._logger.warning("Aiohttp chain client was not closed")
