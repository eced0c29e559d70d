# Copyright 2013 Getlogic BV, Sardar Yumatov
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.


__all__ = ('ExpoError', 'ConfigError', 'SerializationError', 'ClientError',
           'TransportError', 'HttpError', 'ProtocolError', 'RejectedRequestError')


class ExpoError(Exception):
    """ Base class of all errors raised by this library. """


class ConfigError(ExpoError, ValueError):
    """ Invalid client configuration. Raised before any network activity. """


class SerializationError(ExpoError, ValueError):
    """ Message can not be encoded to JSON (eg. NaN in the data payload). """


class ClientError(ExpoError):
    """ A batch could not be submitted to the push service.

        Never raised by :func:`PushClient.send`, the failed batch is
        reported with ``submission-failed`` tickets instead.
    """


class TransportError(ClientError):
    """ No response received at all: connection, DNS, TLS or timeout. """

    def __init__(self, message, cause=None):
        super(TransportError, self).__init__(message)
        self.cause = cause


class HttpError(ClientError):
    """ Push service responded with non-2xx status code. """

    def __init__(self, status, body=None):
        super(HttpError, self).__init__("HTTP {0} from push service".format(status))
        self.status = status
        self.body = body


class ProtocolError(ClientError):
    """ Response does not look like what the push service promised. """


class RejectedRequestError(ClientError):
    """ The whole request was rejected (eg. bad access token).

        Push service reports these in the top-level ``errors`` array, they
        are not related to any particular message.
    """

    def __init__(self, errors, status=None):
        """ :Arguments:
                - `errors` (list): ``(code, message)`` pairs as reported.
                - `status` (int): HTTP status of the response.
        """
        summary = "; ".join("{0}: {1}".format(code, msg) for code, msg in errors)
        super(RejectedRequestError, self).__init__(summary or "Request rejected")
        self.errors = errors
        self.status = status

    @property
    def codes(self):
        """ Error codes reported by the push service. """
        return [code for code, _ in self.errors]
