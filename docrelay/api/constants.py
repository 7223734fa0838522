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

"""Contains constants from the CouchDB replication protocol."""

from typing_extensions import Final

# the prefix of non-replicated documents, used to store checkpoints
LOCAL_DOC_PREFIX: Final = "_local/"

DESIGN_DOC_PREFIX: Final = "_design/"

# the version of the replication id algorithm, recorded in each checkpoint
REPLICATION_ID_VERSION: Final = 3

# the maximum number of sessions kept in a checkpoint's history
MAX_CHECKPOINT_HISTORY: Final = 50

# the sequence at the start of every change feed
START_SEQUENCE: Final = 0


class ChangeStyles:
    """Values for the `style` parameter of the change feed."""

    ALL_DOCS: Final = "all_docs"
    MAIN_ONLY: Final = "main_only"

    ALL = (ALL_DOCS, MAIN_ONLY)


class FeedTypes:
    NORMAL: Final = "normal"
    CONTINUOUS: Final = "continuous"


class ReservedFilters:
    """Built-in filters, which have no design document behind them."""

    DOC_IDS: Final = "_doc_ids"

    @staticmethod
    def is_reserved(name: str) -> bool:
        return name.startswith("_")


class LogFields:
    """Fields of a replication log (checkpoint) document."""

    SESSION_ID: Final = "session_id"
    SOURCE_LAST_SEQ: Final = "source_last_seq"
    HISTORY: Final = "history"
    RECORDED_SEQ: Final = "recorded_seq"

    # the run counters copied into a history entry, when present
    COUNTERS = (
        "doc_write_failures",
        "docs_read",
        "missing_checked",
        "missing_found",
        "start_last_seq",
        "end_last_seq",
        "docs_written",
    )


class DatabaseInfoFields:
    """Fields that must be present in a peer's database info."""

    DB_NAME: Final = "db_name"
    INSTANCE_START_TIME: Final = "instance_start_time"
    UPDATE_SEQ: Final = "update_seq"

    REQUIRED = (DB_NAME, INSTANCE_START_TIME, UPDATE_SEQ)
