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

"""Contains exceptions raised while talking to peers and replicating."""

import logging
from http import HTTPStatus
from typing import Optional, Union

logger = logging.getLogger(__name__)


class CodeMessageException(RuntimeError):
    """An exception with integer code and message string attributes.

    Attributes:
        code: HTTP error code
        msg: string describing the error
    """

    def __init__(self, code: Union[int, HTTPStatus], msg: str):
        super().__init__("%d: %s" % (code, msg))

        # HTTPStatus stringifies as `HTTPStatus.NOT_FOUND` rather than `404`, so
        # convert to a plain int to keep log lines consistent.
        self.code = int(code)
        self.msg = msg


class HttpResponseException(CodeMessageException):
    """
    Represents an HTTP-level failure of a request to a peer

    Attributes:
        response: body of response
        path: the path of the request on the peer, if known
    """

    def __init__(
        self, code: int, msg: str, response: bytes = b"", path: Optional[str] = None
    ):
        """

        Args:
            code: HTTP status code
            msg: reason phrase from HTTP response status line
            response: body of response
            path: the request path, used to tag the error with the peer resource
        """
        if path is not None:
            msg = "%s (%s)" % (msg, path)
        super().__init__(code, msg)
        self.response = response
        self.path = path

    @classmethod
    def from_response(cls, path: str, response) -> "HttpResponseException":
        """Build an exception from a `DocumentResponse`-like object

        The CouchDB `error` and `reason` fields of the body are used for the
        message where present.
        """
        body = response.body
        msg = _phrase_for(response.status)
        if isinstance(body, dict) and "error" in body:
            msg = "%s: %s" % (body["error"], body.get("reason", msg))
        return cls(response.status, msg, path=path)


def _phrase_for(code: int) -> str:
    try:
        return HTTPStatus(code).phrase
    except ValueError:
        return "Unknown Status"


class RequestSendFailed(RuntimeError):
    """Sending a HTTP request to a peer failed due to not being able to
    talk to the remote server for some reason.

    This exception is used to differentiate "expected" errors that arise due to
    networking (e.g. DNS failures, connection refused etc), versus unexpected
    errors (like programming errors).
    """

    def __init__(self, inner_exception: BaseException, can_retry: bool):
        super().__init__(
            "Failed to send request: %s: %s"
            % (type(inner_exception).__name__, inner_exception)
        )
        self.inner_exception = inner_exception
        self.can_retry = can_retry


class ReplicationError(Exception):
    """Base class for failures of the replication protocol itself."""


class PeerUnreachableError(ReplicationError):
    """The source or target failed its database info check.

    Attributes:
        peer: "source" or "target"
    """

    def __init__(self, peer: str, msg: Optional[str] = None):
        if msg is None:
            if peer == "target":
                msg = "Target database does not exist."
            else:
                msg = "%s not reachable." % (peer.capitalize(),)
        super().__init__(msg)
        self.peer = peer


class MissingFieldError(ReplicationError):
    """A peer response lacked a field the protocol requires.

    Attributes:
        field: the missing field
        where: what was being read, eg "source database info"
    """

    def __init__(self, field: str, where: str):
        super().__init__("Missing the '%s' field in %s." % (field, where))
        self.field = field
        self.where = where


class DocumentTransferError(ReplicationError):
    """Transferring or applying the revisions of a single document failed.

    This never aborts a replication run: it is recorded against the document
    in the run summary.

    Attributes:
        doc_id: the document concerned
        code: the HTTP status of the failed request, if there was one
    """

    def __init__(self, doc_id: str, msg: str, code: Optional[int] = None):
        super().__init__("Document %r: %s" % (doc_id, msg))
        self.doc_id = doc_id
        self.msg = msg
        self.code = code
