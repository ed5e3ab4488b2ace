"""
MatchClock
Copyright (C) 2024 thiccaxe

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU Affero General Public License as published
by the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU Affero General Public License for more details.

You should have received a copy of the GNU Affero General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import logging
import uuid

from voluptuous import Schema, Required, Optional, All, Range, Length, Coerce
import voluptuous.error
import aiofiles
import tomlkit
import tomlkit.exceptions
from pathlib import Path


class ConfigurationLoadError(Exception): pass


DEVICE_SCHEMA = Schema({
    Required('device'): {
        Required('id'): All(str, lambda _uuid: str(uuid.UUID(_uuid, version=4))),
        Required('name'): All(str, Length(min=1)),
        Optional('port', default=8080): All(int, Range(min=0, max=65535)),
        Optional('data_dir', default="./data"): All(str, Length(min=1)),
        Optional('broadcast_interval', default=1.0): All(Coerce(float), Range(min=0.05)),
        Optional('advertise', default=True): bool,
    }
})

CONTROLLER_SCHEMA = Schema({
    Required('controller'): {
        Required('id'): All(str, Length(min=1)),
        Optional('devices_file', default="./devices.toml"): All(str, Length(min=1)),
        Optional('reconnect_base_delay', default=2.0): All(Coerce(float), Range(min=0)),
        Optional('max_reconnect_attempts', default=5): All(int, Range(min=1, max=5)),
        Optional('settings_confirm_delay', default=0.5): All(Coerce(float), Range(min=0)),
        Optional('request_timeout', default=15.0): All(Coerce(float), Range(min=0.1)),
    }
})


class Config:
    """
    A TOML configuration file validated against a voluptuous schema.

    `config` holds the raw document (written back on close), `values` the
    validated copy with defaults filled in.
    """
    config: tomlkit.TOMLDocument
    values: dict
    config_opened: bool = False

    def __init__(self, config_location: Path, schema: Schema):
        self.config_location = config_location
        self.schema = schema

    async def initialize(self):
        try:
            async with aiofiles.open(self.config_location, 'r') as config_file:
                file_data = await config_file.read()
                self.config = tomlkit.parse(file_data)
                logging.debug("Loaded Configuration without toml format error")
                logging.debug("Validating against Schema.")
                self.values = self.schema(self.config.unwrap())
                self.config_opened = True
                logging.debug("Validated against Schema.")
        except FileNotFoundError as e:
            logging.exception(e)
            logging.warning(
                f"Could not find {self.config_location}. Copy from .example/ to {self.config_location}")
            raise ConfigurationLoadError() from e
        except IOError as e:
            logging.exception(e)
            logging.warning(f"Could not open file {self.config_location}")
            raise ConfigurationLoadError() from e
        except tomlkit.exceptions.ParseError as e:
            logging.exception(e)
            logging.warning(f"Configuration in {self.config_location} is invalid")
            raise ConfigurationLoadError() from e
        except voluptuous.error.MultipleInvalid as e:
            logging.exception(e)
            logging.warning(f"Configuration in {self.config_location} does not match expected format")
            logging.warning(f"Issue configuration item: {e.path}")
            raise ConfigurationLoadError() from e

        logging.info(f"Configuration loaded.")

    def __getitem__(self, section: str) -> dict:
        return self.values[section]

    async def close(self):
        if self.config_opened is True:
            async with aiofiles.open(self.config_location, 'w') as config_file:
                await config_file.write(tomlkit.dumps(self.config))
            logging.debug("Config file saved to disk.")
