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
from typing import Any, Dict, Iterable, List, Optional, Union

import attr

from docrelay.api.constants import START_SEQUENCE, ChangeStyles, ReservedFilters
from docrelay.config._base import ConfigError

# JSON objects as they come off the wire
JsonDict = Dict[str, Any]

# Change feed sequences are integers on CouchDB 1.x and opaque strings on 2.x+.
SequenceToken = Union[int, str]

# document id -> revision ids, as sent to `_revs_diff`
RevisionMapping = Dict[str, List[str]]

# document id -> {"missing": [...], "possible_ancestors": [...]}
RevisionDifference = Dict[str, JsonDict]


def _sorted_doc_ids(doc_ids: Optional[Iterable[str]]) -> Optional[List[str]]:
    if doc_ids is None:
        return None
    if isinstance(doc_ids, str):
        raise ConfigError("doc_ids must be a list of strings, not a string")
    return sorted(set(doc_ids))


def _check_doc_ids(
    task: "ReplicationTask", attribute: Any, doc_ids: Optional[List[str]]
) -> Optional[List[str]]:
    """on_setattr hook for `doc_ids`: forces the `_doc_ids` filter."""
    doc_ids = _sorted_doc_ids(doc_ids)
    if doc_ids is not None:
        if task.filter is None:
            task.filter = ReservedFilters.DOC_IDS
        elif task.filter != ReservedFilters.DOC_IDS:
            raise ConfigError(
                "If doc_ids is specified, the filter must be %s, not %r"
                % (ReservedFilters.DOC_IDS, task.filter),
                ("replication", "filter"),
            )
    return doc_ids


def _check_filter(
    task: "ReplicationTask", attribute: Any, value: Optional[str]
) -> Optional[str]:
    """on_setattr hook for `filter`: it may not contradict `doc_ids`."""
    if (
        value is not None
        and not ReservedFilters.is_reserved(value)
        and "/" not in value
    ):
        raise ConfigError(
            "Filter %r must be of the form designdoc/function" % (value,),
            ("replication", "filter"),
        )
    if task.doc_ids is not None and value != ReservedFilters.DOC_IDS:
        raise ConfigError(
            "The filter must be %s while doc_ids is specified"
            % (ReservedFilters.DOC_IDS,),
            ("replication", "filter"),
        )
    return value


def _check_style(task: "ReplicationTask", attribute: Any, value: str) -> str:
    if value not in ChangeStyles.ALL:
        raise ConfigError(
            "Unknown change feed style %r: must be one of %s"
            % (value, ", ".join(ChangeStyles.ALL)),
            ("replication", "style"),
        )
    return value


def _check_positive(task: "ReplicationTask", attribute: Any, value: Any) -> Any:
    if value is not None and value <= 0:
        raise ConfigError(
            "%s must be a positive integer" % (attribute.name,),
            ("replication", attribute.name),
        )
    return value


@attr.s(slots=True)
class ReplicationTask:
    """The configuration of one replication run.

    Built once by the caller. While the run is in progress the engine sets
    `replication_id` and moves `since_seq` forward; everything else is read
    only.

    Attributes:
        replication_id: derived by the engine from the rest of the task and
            the peers, so that identical runs share a checkpoint.
        continuous: read a live change feed rather than a one-shot one.
        filter: a `designdoc/function` filter, or a reserved `_`-prefixed name.
        parameters: extra query parameters for the filter.
        create_target: create the target database if it does not exist.
        doc_ids: only replicate these documents. Stored sorted; setting it
            selects the `_doc_ids` filter.
        heartbeat: milliseconds between heartbeats on a continuous feed. Takes
            precedence over `timeout`.
        timeout: milliseconds of inactivity after which a continuous feed is
            closed by the source, when there is no heartbeat.
        style: `all_docs` or `main_only`.
        since_seq: the change feed sequence to resume from.
        bulk_docs_limit: maximum number of documents per bulk write.
        changes_limit: page size of the one-shot change feed; None reads the
            whole feed at once.
    """

    replication_id = attr.ib(type=Optional[str], default=None)
    continuous = attr.ib(type=bool, default=False)
    filter = attr.ib(type=Optional[str], default=None, on_setattr=_check_filter)
    parameters = attr.ib(type=Dict[str, str], factory=dict)
    create_target = attr.ib(type=bool, default=False)
    doc_ids = attr.ib(
        type=Optional[List[str]],
        default=None,
        converter=_sorted_doc_ids,
        on_setattr=_check_doc_ids,
    )
    heartbeat = attr.ib(type=Optional[int], default=10000)
    timeout = attr.ib(type=Optional[int], default=10000)
    style = attr.ib(type=str, default=ChangeStyles.ALL_DOCS, on_setattr=_check_style)
    since_seq = attr.ib(type=SequenceToken, default=START_SEQUENCE)
    bulk_docs_limit = attr.ib(type=int, default=100, on_setattr=_check_positive)
    changes_limit = attr.ib(
        type=Optional[int], default=1000, on_setattr=_check_positive
    )

    def __attrs_post_init__(self) -> None:
        # the on_setattr hooks are not run by __init__, so run them now
        _check_style(self, None, self.style)
        if self.filter is not None and self.doc_ids is None:
            _check_filter(self, None, self.filter)
        fields = attr.fields(ReplicationTask)
        _check_positive(self, fields.bulk_docs_limit, self.bulk_docs_limit)
        _check_positive(self, fields.changes_limit, self.changes_limit)
        if self.doc_ids is not None:
            self.doc_ids = self.doc_ids

    def set_parameter(self, name: str, value: str) -> None:
        self.parameters[name] = value

    def keepalive_options(self) -> Dict[str, int]:
        """The keep-alive query parameter for a continuous change feed."""
        if self.heartbeat is not None:
            return {"heartbeat": self.heartbeat}
        return {"timeout": self.timeout if self.timeout is not None else 10000}
