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

"""Helpers for reading change feeds and the target's revision differences."""

import logging
from typing import AsyncIterator, Iterable, List, Optional, Union

from docrelay.api.constants import ChangeStyles
from docrelay.peer.interfaces import ChangesStream
from docrelay.types import (
    JsonDict,
    RevisionDifference,
    RevisionMapping,
    SequenceToken,
)
from docrelay.util import Clock, json_decoder

logger = logging.getLogger(__name__)

# how long to wait after a heartbeat or an empty read before reading again
HEARTBEAT_PAUSE_SECONDS = 2.0


def _parse_change_lines(payload: Union[str, bytes]) -> List[JsonDict]:
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8")

    rows = []
    for line in payload.split("\n"):
        line = line.strip()
        if not line:
            continue
        row = json_decoder.decode(line)
        if "last_seq" in row:
            continue
        rows.append(row)
    return rows


def get_mapping(changes: Union[JsonDict, str, bytes]) -> RevisionMapping:
    """Build the revision mapping to send to the target's `_revs_diff`.

    Args:
        changes: a page of the normal change feed (`{"results": [...]}`), or
            the raw text of one or more lines of a continuous feed.

    Returns:
        document id -> the revisions listed for it, in feed order.
    """
    if isinstance(changes, (str, bytes)):
        rows: Iterable[JsonDict] = _parse_change_lines(changes)
    else:
        rows = changes.get("results", [])

    mapping: RevisionMapping = {}
    for row in rows:
        revs = mapping.setdefault(row["id"], [])
        for change in row.get("changes", []):
            revs.append(change["rev"])
    return mapping


def _extend_unique(existing: List[str], new: Iterable[str]) -> List[str]:
    seen = set(existing)
    for rev in new:
        if rev not in seen:
            existing.append(rev)
            seen.add(rev)
    return existing


def merge_revision_diff(
    accumulated: RevisionDifference, diff: RevisionDifference, style: str
) -> RevisionDifference:
    """Fold one page's revision difference into the running total.

    With the `all_docs` style a document can turn up on several pages with
    different leaf revisions, so its `missing` and `possible_ancestors` lists
    are merged. Otherwise the latest entry for a document replaces the
    earlier one.
    """
    if style != ChangeStyles.ALL_DOCS:
        accumulated.update(diff)
        return accumulated

    for doc_id, entry in diff.items():
        current = accumulated.setdefault(
            doc_id, {"missing": [], "possible_ancestors": []}
        )
        for key in ("missing", "possible_ancestors"):
            if key in entry:
                current[key] = _extend_unique(list(current.get(key, [])), entry[key])
    return accumulated


class ChangeFeed:
    """Iterates over the changes of a continuous feed.

    Blank lines are heartbeats; after one (or any empty read) we pause before
    reading again. The line carrying `last_seq`, sent when the server closes
    the feed, is recorded rather than yielded. Iteration ends when the stream
    does.
    """

    def __init__(
        self,
        stream: ChangesStream,
        clock: Clock,
        pause: float = HEARTBEAT_PAUSE_SECONDS,
    ):
        self._stream = stream
        self._clock = clock
        self._pause = pause

        self.last_seq: Optional[SequenceToken] = None

    def __aiter__(self) -> AsyncIterator[JsonDict]:
        return self

    async def __anext__(self) -> JsonDict:
        while True:
            line = await self._stream.read_line()
            if line is None:
                raise StopAsyncIteration

            line = line.strip()
            if not line:
                await self._clock.sleep(self._pause)
                continue

            try:
                row = json_decoder.decode(line.decode("utf-8"))
            except ValueError:
                logger.warning("Ignoring unparseable change feed line %r", line)
                continue

            if "last_seq" in row:
                self.last_seq = row["last_seq"]
                await self._clock.sleep(self._pause)
                continue

            if "seq" in row:
                self.last_seq = row["seq"]
            return row

    def close(self) -> None:
        self._stream.close()
