#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Exceptions defined by this package"""

from .internal_types import *

class ConnectorHubError(Exception):
  """Base class for all error exceptions defined by this package."""
  pass

class ConfigError(ConnectorHubError):
  """The configuration is missing a required value or contains a malformed one.

  All validation problems are collected in `errors` so they can be reported together.
  """
  errors: List[str]

  def __init__(self, errors: Union[str, Iterable[str]]):
    if isinstance(errors, str):
      errors = [ errors ]
    self.errors = list(errors)
    super().__init__(f"Invalid configuration: {'; '.join(self.errors)}")

class NetworkTimeoutError(ConnectorHubError):
  """No reply was received from a hub within the allowed time."""
  pass

class CryptoError(ConnectorHubError):
  """Encryption or decryption with the application key failed."""
  pass

class ProtocolError(ConnectorHubError):
  """A datagram was not a valid hub message, or did not match any outstanding request."""
  pass
