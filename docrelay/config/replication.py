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

from typing import Any

from docrelay.api.constants import ChangeStyles
from docrelay.config._base import Config
from docrelay.config._util import validate_config
from docrelay.types import JsonDict, ReplicationTask

_DURATION = {"type": ["integer", "string", "null"]}

REPLICATION_SCHEMA = {
    "type": "object",
    "properties": {
        "continuous": {"type": "boolean"},
        "create_target": {"type": "boolean"},
        "filter": {"type": ["string", "null"]},
        "parameters": {"type": "object", "additionalProperties": {"type": "string"}},
        "doc_ids": {
            "type": ["array", "null"],
            "items": {"type": "string"},
        },
        "heartbeat": _DURATION,
        "timeout": _DURATION,
        "style": {"type": "string", "enum": list(ChangeStyles.ALL)},
        "since_seq": {"type": ["integer", "string"]},
        "bulk_docs_limit": {"type": "integer", "minimum": 1},
        "changes_limit": {"type": ["integer", "null"], "minimum": 1},
    },
    "additionalProperties": False,
}


class ReplicationConfig(Config):
    """The `replication` section, which describes the ReplicationTask to run."""

    section = "replication"

    def read_config(self, config: JsonDict, **kwargs: Any) -> None:
        replication_config = config.get("replication") or {}
        validate_config(REPLICATION_SCHEMA, replication_config, ("replication",))

        self.continuous = replication_config.get("continuous", False)
        self.create_target = replication_config.get("create_target", False)
        self.filter = replication_config.get("filter")
        self.parameters = dict(replication_config.get("parameters") or {})
        self.doc_ids = replication_config.get("doc_ids")

        self.heartbeat = self._optional_duration(replication_config, "heartbeat")
        self.timeout = self._optional_duration(replication_config, "timeout")

        self.style = replication_config.get("style", ChangeStyles.ALL_DOCS)
        self.since_seq = replication_config.get("since_seq", 0)
        self.bulk_docs_limit = replication_config.get("bulk_docs_limit", 100)
        self.changes_limit = replication_config.get("changes_limit", 1000)

        # build a task now so that conflicting options are reported at startup
        self.new_task()

    def _optional_duration(self, replication_config: JsonDict, name: str):
        if name not in replication_config:
            return 10000
        value = replication_config[name]
        if value is None:
            return None
        return self.parse_duration(value)

    def new_task(self) -> ReplicationTask:
        """Build a fresh task from this configuration.

        Raises:
            ConfigError if the options contradict each other.
        """
        return ReplicationTask(
            continuous=self.continuous,
            filter=self.filter,
            parameters=dict(self.parameters),
            create_target=self.create_target,
            doc_ids=self.doc_ids,
            heartbeat=self.heartbeat,
            timeout=self.timeout,
            style=self.style,
            since_seq=self.since_seq,
            bulk_docs_limit=self.bulk_docs_limit,
            changes_limit=self.changes_limit,
        )
