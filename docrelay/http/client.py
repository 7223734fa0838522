# Copyright 2026 The docrelay Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
import base64
import logging
import urllib.parse
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import treq
from canonicaljson import encode_canonical_json
from prometheus_client import Counter

from twisted.internet import defer, error as twisted_error
from twisted.internet.defer import DeferredQueue
from twisted.internet.interfaces import IReactorTime
from twisted.internet.protocol import connectionDone
from twisted.protocols import basic
from twisted.python.failure import Failure
from twisted.web._newclient import ResponseDone
from twisted.web.client import (
    Agent,
    HTTPConnectionPool,
    ResponseNeverReceived,
    readBody,
)
from twisted.web.http import PotentialDataLoss
from twisted.web.http_headers import Headers
from twisted.web.iweb import IAgent, IResponse

from docrelay import __version__
from docrelay.api.errors import HttpResponseException, RequestSendFailed
from docrelay.http import RequestTimedOutError, redact_uri
from docrelay.util import json_decoder

logger = logging.getLogger(__name__)

outgoing_requests_counter = Counter("docrelay_http_client_requests", "", ["method"])
incoming_responses_counter = Counter(
    "docrelay_http_client_responses", "", ["method", "code"]
)

# the type of the headers map, to be passed to the t.w.h.Headers.
#
# A str header value would be read by Twisted as a sequence of 1-character
# values, so values are always lists.
RawHeaders = Mapping[bytes, List[bytes]]

# query parameters: each value may be a single string or a list of them
QueryParams = Mapping[str, Union[str, List[str]]]

# connection-level errors that mean we never got to talk HTTP to the peer
_CONNECTION_ERRORS = (
    twisted_error.ConnectError,
    twisted_error.DNSLookupError,
    twisted_error.ConnectionRefusedError,
    twisted_error.ConnectionLost,
    ResponseNeverReceived,
)


def _timeout_to_request_timed_out_error(f: Failure) -> Failure:
    if f.check(twisted_error.TimeoutError, twisted_error.ConnectingCancelledError):
        # The TCP connection has its own timeout (set by the 'connectTimeout' param
        # on the Agent), which raises twisted_error.TimeoutError exception.
        raise RequestTimedOutError("Timeout connecting to remote server")
    elif f.check(defer.TimeoutError):
        # this one means that we hit our overall timeout on the request
        raise RequestTimedOutError("Timeout waiting for response from remote server")

    return f


def _connection_error_to_request_send_failed(f: Failure) -> Failure:
    if f.check(*_CONNECTION_ERRORS):
        raise RequestSendFailed(f.value, can_retry=True)
    return f


def encode_query_args(args: Optional[QueryParams]) -> str:
    """
    Encodes a map of query arguments to a string which can be appended to a URL.

    Args:
        args: The query arguments, a mapping of string to string or list of strings.

    Returns:
        The query arguments encoded as a string, without the leading '?'.
    """
    if not args:
        return ""

    return urllib.parse.urlencode(args, True)


class SimpleHttpClient:
    """
    A simple, no-frills HTTP client with methods that wrap up the ways the
    replicator talks to peers: JSON in and out, and line-delimited streams.
    """

    def __init__(
        self,
        reactor: IReactorTime,
        user_agent: Optional[str] = None,
        request_timeout: float = 60,
        agent: Optional[IAgent] = None,
    ):
        """
        Args:
            reactor: the reactor to make requests and run timeouts on.
            user_agent: the User-Agent to send; defaults to `docrelay/<version>`.
            request_timeout: seconds to wait for the response headers.
            agent: the agent to make requests with; by default a pooled
                `twisted.web.client.Agent`.
        """
        self.reactor = reactor
        self.request_timeout = request_timeout

        if user_agent is None:
            user_agent = "docrelay/%s" % (__version__,)
        self.user_agent = user_agent.encode("ascii")

        if agent is None:
            # a replication talks to two hosts, mostly one request at a time
            pool = HTTPConnectionPool(reactor)
            pool.maxPersistentPerHost = 5
            pool.cachedConnectionTimeout = 2 * 60
            agent = Agent(reactor, connectTimeout=15, pool=pool)

        self.agent = agent

    async def request(
        self,
        method: str,
        uri: str,
        data: Optional[bytes] = None,
        headers: Optional[Headers] = None,
    ) -> IResponse:
        """
        Args:
            method: HTTP method to use.
            uri: URI to query.
            data: Data to send in the request body, if applicable.
            headers: Request headers.

        Returns:
            Response object, once the headers have been read.

        Raises:
            RequestTimedOutError if the request times out before the headers are read
            RequestSendFailed if the peer could not be reached
        """
        outgoing_requests_counter.labels(method).inc()

        # log request but strip credentials
        logger.debug("Sending request %s %s", method, redact_uri(uri))

        try:
            request_deferred: defer.Deferred = treq.request(
                method,
                uri,
                agent=self.agent,
                data=data,
                headers=headers,
                # Avoid buffering the body in treq since we do not reuse
                # response bodies.
                unbuffered=True,
            )

            # we use our own timeout mechanism rather than treq's as a workaround
            # for https://twistedmatrix.com/trac/ticket/9534.
            request_deferred.addTimeout(self.request_timeout, self.reactor)

            request_deferred.addErrback(_timeout_to_request_timed_out_error)
            request_deferred.addErrback(_connection_error_to_request_send_failed)

            response = await request_deferred

            incoming_responses_counter.labels(method, response.code).inc()
            logger.info(
                "Received response to %s %s: %s",
                method,
                redact_uri(uri),
                response.code,
            )
            return response
        except Exception as e:
            incoming_responses_counter.labels(method, "ERR").inc()
            logger.info(
                "Error sending request to  %s %s: %s %s",
                method,
                redact_uri(uri),
                type(e).__name__,
                e,
            )
            raise

    def _headers(
        self, headers: Optional[RawHeaders], has_body: bool = False
    ) -> Headers:
        actual_headers = {
            b"User-Agent": [self.user_agent],
            b"Accept": [b"application/json"],
        }
        if has_body:
            actual_headers[b"Content-Type"] = [b"application/json"]
        if headers:
            actual_headers.update(headers)
        return Headers(actual_headers)

    async def request_json(
        self,
        method: str,
        uri: str,
        json_body: Any = None,
        args: Optional[QueryParams] = None,
        headers: Optional[RawHeaders] = None,
    ) -> Tuple[int, Any]:
        """Make a request and parse the response as JSON, whatever its status.

        CouchDB reports errors as JSON objects, so callers which need to act on
        particular statuses (such as a 404 for a missing checkpoint) use this
        rather than the raising helpers below.

        Returns:
            the HTTP status code and the decoded JSON body (None if the body
            was empty or not JSON).
        """
        query_str = encode_query_args(args)
        if query_str:
            uri = "%s?%s" % (uri, query_str)

        data = None
        if json_body is not None:
            data = encode_canonical_json(json_body)

        response = await self.request(
            method,
            uri,
            headers=self._headers(headers, has_body=data is not None),
            data=data,
        )

        body = await readBody(response)

        try:
            parsed = json_decoder.decode(body.decode("utf-8")) if body else None
        except ValueError:
            logger.warning(
                "%s %s returned a non-JSON body", method, redact_uri(uri)
            )
            parsed = None

        return response.code, parsed

    async def _json_or_raise(
        self,
        method: str,
        uri: str,
        json_body: Any = None,
        args: Optional[QueryParams] = None,
        headers: Optional[RawHeaders] = None,
    ) -> Any:
        query_str = encode_query_args(args)
        if query_str:
            uri = "%s?%s" % (uri, query_str)

        data = None
        if json_body is not None:
            data = encode_canonical_json(json_body)
            logger.debug("HTTP %s %s -> %s", method, data, redact_uri(uri))

        response = await self.request(
            method,
            uri,
            headers=self._headers(headers, has_body=data is not None),
            data=data,
        )

        body = await readBody(response)

        if 200 <= response.code < 300:
            return json_decoder.decode(body.decode("utf-8"))
        else:
            raise HttpResponseException(
                response.code,
                response.phrase.decode("ascii", errors="replace"),
                body,
                path=urllib.parse.urlsplit(uri).path,
            )

    async def get_json(
        self,
        uri: str,
        args: Optional[QueryParams] = None,
        headers: Optional[RawHeaders] = None,
    ) -> Any:
        """Gets some json from the given URI.

        Args:
            uri: The URI to request, not including query parameters
            args: A dictionary used to create query string
            headers: a map from header name to a list of values for that header
        Returns:
            Succeeds when we get a 2xx HTTP response, with the HTTP body as JSON.
        Raises:
            RequestTimedOutError: if there is a timeout before the response headers
               are received. Note there is currently no timeout on reading the response
               body.

            HttpResponseException On a non-2xx HTTP response.

            ValueError: if the response was not JSON
        """
        return await self._json_or_raise("GET", uri, args=args, headers=headers)

    async def post_json_get_json(
        self,
        uri: str,
        post_json: Any,
        args: Optional[QueryParams] = None,
        headers: Optional[RawHeaders] = None,
    ) -> Any:
        """

        Args:
            uri: URI to query.
            post_json: request body, to be encoded as json
            args: A dictionary used to create query strings
            headers: a map from header name to a list of values for that header

        Returns:
            parsed json

        Raises:
            RequestTimedOutError: if there is a timeout before the response headers
               are received.

            HttpResponseException: On a non-2xx HTTP response.

            ValueError: if the response was not JSON
        """
        return await self._json_or_raise(
            "POST", uri, json_body=post_json, args=args, headers=headers
        )

    async def put_json(
        self,
        uri: str,
        json_body: Any,
        args: Optional[QueryParams] = None,
        headers: Optional[RawHeaders] = None,
    ) -> Any:
        """Puts some json to the given URI.

        Args:
            uri: The URI to request, not including query parameters
            json_body: The JSON to put in the HTTP body,
            args: A dictionary used to create query strings
            headers: a map from header name to a list of values for that header
        Returns:
            Succeeds when we get a 2xx HTTP response, with the HTTP body as JSON.
        Raises:
            RequestTimedOutError: if there is a timeout before the response headers
               are received.

            HttpResponseException On a non-2xx HTTP response.

            ValueError: if the response was not JSON
        """
        return await self._json_or_raise(
            "PUT", uri, json_body=json_body, args=args, headers=headers
        )

    async def open_line_stream(
        self,
        method: str,
        uri: str,
        json_body: Any = None,
        args: Optional[QueryParams] = None,
        headers: Optional[RawHeaders] = None,
        idle_timeout: Optional[float] = None,
    ) -> "LineStream":
        """Make a request whose response body is read line by line as it arrives.

        Args:
            idle_timeout: seconds to wait for the next line before giving up
                on the stream. None waits forever.

        Returns:
            a LineStream over the response body.

        Raises:
            HttpResponseException: On a non-2xx HTTP response.
        """
        query_str = encode_query_args(args)
        if query_str:
            uri = "%s?%s" % (uri, query_str)

        data = None
        if json_body is not None:
            data = encode_canonical_json(json_body)

        response = await self.request(
            method,
            uri,
            headers=self._headers(headers, has_body=data is not None),
            data=data,
        )

        if not 200 <= response.code < 300:
            body = await readBody(response)
            raise HttpResponseException(
                response.code,
                response.phrase.decode("ascii", errors="replace"),
                body,
                path=urllib.parse.urlsplit(uri).path,
            )

        line_protocol = _LineReceiverProtocol()
        response.deliverBody(line_protocol)
        return LineStream(line_protocol, self.reactor, idle_timeout)


class _LineReceiverProtocol(basic.LineOnlyReceiver):
    """A protocol which splits a response body into lines as it arrives.

    Each complete line (without its line ending) is put on `lines`; None is
    put when the body ends. A line longer than MAX_LENGTH ends the stream.
    """

    delimiter = b"\n"

    # a change row lists every leaf revision of its document
    MAX_LENGTH = 1024 * 1024

    def __init__(self) -> None:
        self.lines: "DeferredQueue[Optional[bytes]]" = DeferredQueue()
        self.finished = False

    def dataReceived(self, data: bytes) -> None:
        if self.finished:
            return
        super().dataReceived(data)

    def lineReceived(self, line: bytes) -> None:
        if not self.finished:
            self.lines.put(line.rstrip(b"\r"))

    def lineLengthExceeded(self, line: bytes) -> None:
        logger.warning(
            "Line on stream is over %d bytes: closing it", self.MAX_LENGTH
        )
        self.abort()

    def connectionLost(self, reason: Failure = connectionDone) -> None:
        if self.finished:
            return

        if not reason.check(ResponseDone, PotentialDataLoss):
            logger.info("Line stream closed: %s", reason.getErrorMessage())

        # the last line need not be terminated
        if self._buffer:
            self.lineReceived(self._buffer)
            self._buffer = b""
        self.finish()

    def finish(self) -> None:
        self.finished = True
        self.lines.put(None)

    def abort(self) -> None:
        """End the stream and stop the response body being read.

        The transport of a response body is a `TransportProxyProducer`;
        stopping it makes the HTTP client protocol drop the connection.
        """
        if self.finished:
            return
        self.finish()
        if self.transport is not None:
            self.transport.stopProducing()


class LineStream:
    """A line-delimited HTTP response body, consumed with `read_line`.

    Closing the stream aborts the underlying connection, which is how a
    continuous replication is cancelled.
    """

    def __init__(
        self,
        line_protocol: _LineReceiverProtocol,
        reactor: IReactorTime,
        idle_timeout: Optional[float] = None,
    ):
        self._protocol = line_protocol
        self._reactor = reactor
        self._idle_timeout = idle_timeout
        self._eof = False

    @property
    def closed(self) -> bool:
        return self._eof

    async def read_line(self) -> Optional[bytes]:
        """Wait for the next line of the body.

        Returns:
            the line, without its line ending, or None once the stream has
            ended, been closed, or gone quiet for longer than the idle timeout.
        """
        if self._eof:
            return None

        d = self._protocol.lines.get()
        if self._idle_timeout is not None:
            d.addTimeout(self._idle_timeout, self._reactor)

        try:
            line = await d
        except defer.TimeoutError:
            logger.info(
                "No data on stream for %ss: closing it", self._idle_timeout
            )
            self.close()
            return None

        if line is None:
            self._eof = True
        return line

    def close(self) -> None:
        """Stop reading the stream and drop the connection."""
        if self._eof:
            return
        self._eof = True
        self._protocol.abort()


def encode_basic_auth(username: str, password: str) -> Dict[bytes, List[bytes]]:
    """The Authorization header for HTTP basic auth."""
    token = base64.b64encode(("%s:%s" % (username, password)).encode("utf-8"))
    return {b"Authorization": [b"Basic " + token]}
