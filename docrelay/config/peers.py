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

import logging
import urllib.parse
from typing import Any, Optional

import attr

from docrelay.config._base import Config, ConfigError
from docrelay.config._util import validate_config
from docrelay.types import JsonDict

logger = logging.getLogger(__name__)

PEER_SCHEMA = {
    "type": "object",
    "required": ["url", "database"],
    "properties": {
        "url": {"type": "string", "minLength": 1},
        "database": {"type": "string", "minLength": 1},
        "username": {"type": "string"},
        "password": {"type": "string"},
    },
}


@attr.s(slots=True, frozen=True, auto_attribs=True)
class PeerConfig:
    """Where to find one of the two databases being replicated."""

    url: str
    database: str
    username: Optional[str] = None
    password: Optional[str] = None


def _parse_peer(name: str, config: Any) -> PeerConfig:
    validate_config(PEER_SCHEMA, config, (name,))

    url = config["url"].rstrip("/")
    parsed = urllib.parse.urlsplit(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigError("%r is not an http(s) URL" % (url,), (name, "url"))

    return PeerConfig(
        url=url,
        database=config["database"],
        username=config.get("username"),
        password=config.get("password"),
    )


class PeersConfig(Config):
    section = "peers"

    def read_config(self, config: JsonDict, **kwargs: Any) -> None:
        for name in ("source", "target"):
            if name not in config:
                raise ConfigError("Missing the %s database" % (name,), (name,))

        self.source = _parse_peer("source", config["source"])
        self.target = _parse_peer("target", config["target"])
