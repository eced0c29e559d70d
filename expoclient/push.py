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

import re
import time
import gzip
import json
import logging
import datetime
from collections import deque
from collections.abc import Mapping
from concurrent import futures

import requests

from expoclient.errors import (ConfigError, SerializationError, ClientError,
                               TransportError, HttpError, ProtocolError,
                               RejectedRequestError)


__all__ = ('PushClient', 'Gateway', 'PushMessage', 'PushTicket', 'PushReceipt',
           'Batch', 'ResponseEnvelope', 'Reconciler', 'SubmissionResult',
           'ClassifiedError', 'ERROR_CODES', 'classify', 'batches', 'encode_json',
           'compress', 'is_push_token', 'SUBMISSION_FAILED', 'CANCELLED')

logger = logging.getLogger(__name__)

# synthetic ticket codes, never sent by the push service itself
SUBMISSION_FAILED = 'submission-failed'
CANCELLED = 'cancelled'

# compact UTF-8 JSON, NaN and Infinity are not JSON
JSON_PARAMETERS = {
    'separators': (',', ':'),
    'ensure_ascii': False,
    'allow_nan': False,
}

_TOKEN_RE = re.compile(r'^Expo(nent)?PushToken\[.+\]$')


def is_push_token(value):
    """ Returns True if value looks like ``ExponentPushToken[...]``.

        Tokens are opaque to this library, the check is offered for
        callers that want to reject garbage before it reaches the service.
    """
    return isinstance(value, str) and _TOKEN_RE.match(value) is not None


def encode_json(value, json_parameters=None):
    """ Serialize value to JSON. Returns UTF-8 encoded bytes. """
    if json_parameters is None:
        json_parameters = JSON_PARAMETERS

    try:
        ret = json.dumps(value, **json_parameters)
    except (TypeError, ValueError) as exc:
        raise SerializationError("Can not encode to JSON: {0}".format(exc))

    return ret.encode("utf-8")


def compress(payload):
    """ Gzip request body. """
    return gzip.compress(payload)


# all error codes {code: (explanation, can retry?, device failure?)}
ERROR_CODES = {
    # the app was uninstalled or the token expired, stop sending to it
    'DeviceNotRegistered': ('Device is not registered', False, True),
    # payload exceeds 4096 bytes
    'MessageTooBig': ('Message too big', False, False),
    # too many messages to the same device, back off and retry
    'MessageRateExceeded': ('Message rate exceeded', True, False),
    # push credentials of the app are missing or broken
    'InvalidCredentials': ('Invalid credentials', False, False),
    # FCM server key does not belong to the sender of the token
    'MismatchSenderId': ('Mismatched sender id', False, False),
    # unknown error, worth a retry, but user should limit number of retries
    None: ('Unknown', True, False),
}


class ClassifiedError(object):
    """ Typed interpretation of an error code reported by the push service. """
    DEVICE_NOT_REGISTERED = 'DeviceNotRegistered'
    MESSAGE_TOO_BIG = 'MessageTooBig'
    MESSAGE_RATE_EXCEEDED = 'MessageRateExceeded'
    INVALID_CREDENTIALS = 'InvalidCredentials'
    MISMATCH_SENDER_ID = 'MismatchSenderId'
    UNKNOWN = 'Unknown'

    def __init__(self, kind, code, explanation, retryable, device_failure):
        """ Use :func:`classify` instead.

            :Arguments:
                - `kind` (str): one of the class constants.
                - `code` (str): raw code as reported, kept for ``Unknown``.
                - `explanation` (str): human readable explanation.
                - `retryable` (bool): resending the message may succeed.
                - `device_failure` (bool): the target token is dead.
        """
        self.kind = kind
        self.code = code
        self.explanation = explanation
        self.retryable = retryable
        self.device_failure = device_failure

    @property
    def is_unknown(self):
        return self.kind == self.UNKNOWN

    def __eq__(self, other):
        if isinstance(other, ClassifiedError):
            return (self.kind, self.code) == (other.kind, other.code)

        return NotImplemented

    def __hash__(self):
        return hash((self.kind, self.code))

    def __repr__(self):
        if self.is_unknown:
            return "Unknown({0!r})".format(self.code)

        return self.kind


def classify(code):
    """ Map error code to :class:`ClassifiedError`.

        Never fails. Codes missing in :data:`ERROR_CODES`, including the
        synthetic ``submission-failed`` and ``cancelled``, are classified as
        ``Unknown(code)`` so new codes introduced by the push service will
        not break the caller.
    """
    if isinstance(code, str) and code in ERROR_CODES:
        kind, key = code, code
    else:
        kind, key = ClassifiedError.UNKNOWN, None

    expl, can_retry, device_failure = ERROR_CODES[key]
    return ClassifiedError(kind, code, expl, can_retry, device_failure)


class PushMessage(object):
    """ The notification message to a single device. """
    # (attribute, field name on the wire)
    FIELDS = (
        ('to', 'to'),
        ('title', 'title'),
        ('body', 'body'),
        ('data', 'data'),
        ('priority', 'priority'),
        ('sound', 'sound'),
        ('badge', 'badge'),
        ('channel_id', 'channelId'),
        ('ttl', 'ttl'),
        ('expiration', 'expiration'),
        ('subtitle', 'subtitle'),
        ('category_id', 'categoryId'),
        ('mutable_content', 'mutableContent'),
    )

    PRIORITIES = ('default', 'normal', 'high')

    def __init__(self, to, title=None, body=None, data=None, priority=None, sound=None,
                 badge=None, channel_id=None, ttl=None, expiration=None, subtitle=None,
                 category_id=None, mutable_content=None):
        """ The push notification to one device.

            Read more `about message fields
            <https://docs.expo.dev/push-notifications/sending-notifications/#message-request-format>`_.

            :Arguments:
                - `to` (str): push token of the target device, opaque.
                - `title` (str): title of the notification.
                - `body` (str): the message.
                - `data` (dict): JSON-compatible dictionary delivered to the app.
                - `priority` (str): ``default``, ``normal`` or ``high``.
                - `sound` (str or dict): sound to play on arrival, iOS only.
                - `badge` (int): badge number over the application icon, iOS only.
                - `channel_id` (str): notification channel, Android only.
                - `ttl` (int): seconds the message may be kept for redelivery.
                - `expiration` (int or datetime or timedelta): timestamp when message will expire.
                - `subtitle` (str): subtitle, iOS only.
                - `category_id` (str): notification category.
                - `mutable_content` (bool): let the app mutate content before display, iOS only.
        """
        if not isinstance(to, str) or not to:
            raise ValueError("Push token must be a non-empty string.")

        if title is None and body is None and data is None:
            raise ValueError("Message needs at least one of title, body or data.")

        if data is not None and not isinstance(data, Mapping):
            raise ValueError("Data payload must be a mapping.")

        if priority is not None and priority not in self.PRIORITIES:
            raise ValueError("Unknown priority: {0}".format(priority))

        if isinstance(expiration, datetime.timedelta):
            expiration = datetime.datetime.now() + expiration

        if isinstance(expiration, datetime.datetime):
            expiration = expiration.timestamp()

        self.to = to
        self.title = title
        self.body = body
        self.data = data
        self.priority = priority
        self.sound = sound
        self.badge = badge
        self.channel_id = channel_id
        self.ttl = ttl
        self.expiration = int(expiration) if expiration is not None else None
        self.subtitle = subtitle
        self.category_id = category_id
        self.mutable_content = mutable_content

    def __getstate__(self):
        """ Returns ``dict`` with ``__init__`` arguments that are set.

            If you use something else than ``pickle`` to store messages,
            then::

                state = message.__getstate__()
                # store, send over the wire, etc
                message_copy = PushMessage(**state)
        """
        return dict((attr, getattr(self, attr)) for attr, _ in self.FIELDS
                    if getattr(self, attr) is not None)

    def __setstate__(self, state):
        self.__init__(**state)

    def as_dict(self):
        """ Message as gateway JSON object, absent fields are omitted. """
        ret = {}
        for attr, field in self.FIELDS:
            value = getattr(self, attr)
            if value is not None:
                ret[field] = dict(value) if attr == 'data' else value

        return ret

    def __repr__(self):
        return "<PushMessage to={0!r} title={1!r}>".format(self.to, self.title)


class PushTicket(object):
    """ Acknowledgment of one submitted message. """
    OK = 'ok'
    ERROR = 'error'

    # tickets must carry an id when accepted
    id_required = True

    def __init__(self, status, id=None, message=None, details=None):
        self.status = status
        self.id = id
        self.message = message
        self.details = details or {}

        if status == self.ERROR:
            self.error = classify(self.code)
        else:
            self.error = None

    @classmethod
    def from_json(cls, item, id=None):
        """ Parse decoded JSON object. Raises :class:`ProtocolError` on garbage. """
        if not isinstance(item, dict):
            raise ProtocolError("Expected ticket object, got {0!r}".format(item))

        status = item.get('status')
        if status == cls.OK:
            item_id = item.get('id', id)
            if cls.id_required and not isinstance(item_id, str):
                raise ProtocolError("Accepted ticket without id: {0!r}".format(item))

            return cls(status, id=item_id)

        if status == cls.ERROR:
            details = item.get('details')
            if details is not None and not isinstance(details, dict):
                raise ProtocolError("Malformed error details: {0!r}".format(item))

            return cls(status, id=item.get('id', id), message=item.get('message'), details=details)

        raise ProtocolError("Unknown ticket status: {0!r}".format(status))

    @classmethod
    def failure(cls, code, message, id=None):
        """ Synthetic error ticket for message that never got a real one. """
        return cls(cls.ERROR, id=id, message=message, details={'error': code})

    @property
    def is_ok(self):
        return self.status == self.OK

    @property
    def code(self):
        """ Error code as reported in ``details.error``, None for accepted ones. """
        return self.details.get('error')

    def __repr__(self):
        if self.is_ok:
            return "<{0} ok id={1!r}>".format(type(self).__name__, self.id)

        return "<{0} error {1!r}: {2}>".format(type(self).__name__, self.error, self.message)


class PushReceipt(PushTicket):
    """ Delivery receipt for an accepted ticket.

        The push service reports receipts keyed by ticket id, the id is
        stored in :attr:`id`.
    """
    id_required = False


class Batch(object):
    """ Messages submitted in one request. """
    json_parameters = JSON_PARAMETERS

    def __init__(self, messages, offset=0):
        """ :Arguments:
                - `messages` (list): non-empty list of :class:`PushMessage`.
                - `offset` (int): position of the first message in caller's list.
        """
        self.messages = tuple(messages)
        self.offset = offset
        if not self.messages:
            raise ValueError("Batch may not be empty.")

    @property
    def end(self):
        return self.offset + len(self.messages)

    def __len__(self):
        return len(self.messages)

    def __iter__(self):
        return iter(self.messages)

    def get_json_payload(self):
        """ Convert batch to JSON array acceptable by the push service. Returns bytes. """
        return encode_json([msg.as_dict() for msg in self.messages], self.json_parameters)

    def __repr__(self):
        return "<Batch [{0}:{1}]>".format(self.offset, self.end)


def batches(messages, batch_size=100):
    """ Split messages into batches of at most ``batch_size`` messages.

        Order is kept, concatenated batches reproduce the input. Empty input
        gives empty list.

        :Returns:
            list of :class:`Batch`
    """
    if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size <= 0:
        raise ConfigError("invalid batch size: {0!r}".format(batch_size))

    messages = list(messages)
    return [Batch(messages[offset:offset + batch_size], offset)
            for offset in range(0, len(messages), batch_size)]


class ResponseEnvelope(object):
    """ Decoded answer of the push service to one batch. """

    def __init__(self, items):
        self.items = items

    @classmethod
    def parse(cls, payload, expected):
        """ Validate decoded response body.

            The push service promises one ticket per message in the same
            order, so any other count is a :class:`ProtocolError`.
        """
        if not isinstance(payload, dict):
            raise ProtocolError("Expected JSON object in response")

        data = payload.get('data')
        if not isinstance(data, list):
            raise ProtocolError("Response has no 'data' list")

        if len(data) != expected:
            raise ProtocolError("Got {0} tickets for {1} messages".format(len(data), expected))

        return cls([PushTicket.from_json(item) for item in data])

    def __len__(self):
        return len(self.items)


class Gateway(object):
    """ HTTP conversation with the push service. """
    PUSH_PATH = '/push/send'
    RECEIPTS_PATH = '/push/getReceipts'

    def __init__(self, access_token, base_url, enable_gzip=True, gzip_threshold=1024,
                 request_timeout=30, session=None):
        """ Gateway client.

            No retries are performed here. Any failure is raised as one
            of :class:`ClientError` subclasses.

            :Arguments:
                - `access_token` (str): bearer credential.
                - `base_url` (str): API root, eg. ``https://exp.host/--/api/v2``.
                - `enable_gzip` (bool): compress request bodies.
                - `gzip_threshold` (int): compress only bodies larger than this many bytes.
                - `request_timeout` (float): timeout of one request in seconds, None to wait forever.
                - `session` (``requests.Session``): session to use, created on demand if omitted.
        """
        self._access_token = access_token
        self.base_url = base_url.rstrip('/')
        self.enable_gzip = enable_gzip
        self.gzip_threshold = gzip_threshold
        self.request_timeout = request_timeout
        self._session = session
        self._own_session = session is None

    @property
    def push_url(self):
        return self.base_url + self.PUSH_PATH

    @property
    def receipts_url(self):
        return self.base_url + self.RECEIPTS_PATH

    @property
    def session(self):
        """ HTTP session, connection pool is kept between requests. """
        if self._session is None:
            self._session = self._create_session()

        return self._session

    def _create_session(self):
        """ Create new requests session. Hook that you may override. """
        return requests.Session()

    def close(self):
        """ Close the session if it was created by this gateway. """
        if self._session is not None and self._own_session:
            self._session.close()
            self._session = None

    def should_compress(self, payload):
        return self.enable_gzip and len(payload) > self.gzip_threshold

    def get_headers(self, compressed):
        headers = {
            'Accept': 'application/json',
            'Accept-Encoding': 'gzip, deflate',
            'Content-Type': 'application/json',
            'Authorization': 'Bearer {0}'.format(self._access_token),
        }

        if compressed:
            headers['Content-Encoding'] = 'gzip'

        return headers

    def submit(self, batch, timeout=None):
        """ Send the batch.

            :Returns:
                :class:`ResponseEnvelope` with one ticket per message.
        """
        return self.submit_payload(batch.get_json_payload(), len(batch), timeout)

    def submit_payload(self, payload, expected, timeout=None):
        """ Send already encoded batch of ``expected`` messages. """
        body = self._post(self.push_url, payload, timeout)
        return ResponseEnvelope.parse(body, expected)

    def fetch_receipts(self, ids, timeout=None):
        """ Fetch delivery receipts for ticket ids.

            The push service omits ids it knows nothing about (yet), so
            does the returned mapping.

            :Returns:
                ``{ticket id: PushReceipt}``
        """
        body = self._post(self.receipts_url, encode_json({'ids': list(ids)}), timeout)
        data = body.get('data') if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise ProtocolError("Response has no 'data' object")

        return dict((rid, PushReceipt.from_json(item, rid)) for rid, item in data.items())

    def _post(self, url, payload, timeout=None):
        compressed = self.should_compress(payload)
        body = compress(payload) if compressed else payload

        if timeout is None:
            timeout = self.request_timeout

        try:
            response = self.session.post(url, data=body, headers=self.get_headers(compressed),
                                         timeout=timeout)
        except requests.RequestException as exc:
            raise TransportError("Request to {0} failed: {1}".format(url, exc), exc)

        logger.debug("POST %s (%d bytes%s) - status %s", url, len(body),
                     ", gzip" if compressed else "", response.status_code)

        try:
            parsed = response.json()
        except ValueError:
            parsed = None

        if isinstance(parsed, dict) and parsed.get('errors'):
            raise RejectedRequestError(self._request_errors(parsed['errors']), response.status_code)

        if not 200 <= response.status_code < 300:
            raise HttpError(response.status_code, parsed if parsed is not None else response.text)

        if parsed is None:
            raise ProtocolError("Response body is not JSON")

        return parsed

    @staticmethod
    def _request_errors(errors):
        if not isinstance(errors, list):
            errors = [errors]

        ret = []
        for err in errors:
            if isinstance(err, dict):
                ret.append((err.get('code'), err.get('message')))
            else:
                ret.append((None, str(err)))

        return ret


class Reconciler(object):
    """ Index aligned ticket arena.

        Every batch owns the disjoint slice ``[offset:offset + len]``, so
        batches may complete in any order.
    """

    def __init__(self, total):
        self._tickets = [None] * total

    def place(self, batch, envelope):
        """ Store tickets of the batch. """
        if len(envelope.items) != len(batch):
            raise ProtocolError("Got {0} tickets for {1} messages".format(len(envelope.items), len(batch)))

        self._tickets[batch.offset:batch.end] = envelope.items

    def fail(self, batch, code, message):
        """ Store synthetic error tickets for every message of the batch. """
        self._tickets[batch.offset:batch.end] = [PushTicket.failure(code, message) for _ in batch]

    def result(self, messages):
        if len(messages) != len(self._tickets) or any(t is None for t in self._tickets):
            raise RuntimeError("Not every message has a ticket")

        return SubmissionResult(messages, self._tickets)


class SubmissionResult(object):
    """ Result of send operation.

        Behaves as a read-only sequence of :class:`PushTicket`, where
        ``result[i]`` is the ticket of ``messages[i]``.
    """

    def __init__(self, messages, tickets):
        self.messages = tuple(messages)
        self.tickets = tuple(tickets)

    def __len__(self):
        return len(self.tickets)

    def __getitem__(self, index):
        return self.tickets[index]

    def __iter__(self):
        return iter(self.tickets)

    def pairs(self):
        """ Returns list of ``(message, ticket)`` pairs. """
        return list(zip(self.messages, self.tickets))

    @property
    def ids(self):
        """ Ticket ids of accepted messages, use them to fetch receipts. """
        return [t.id for t in self.tickets if t.is_ok]

    @property
    def failed(self):
        """ Reports dead device tokens as ``{index: ticket}`` mapping.

            You have to stop sending notifications to these tokens. The
            following codes are considered to be token failures:
                - ``DeviceNotRegistered``
        """
        return dict((idx, t) for idx, t in enumerate(self.tickets)
                    if t.error is not None and t.error.device_failure)

    @property
    def errors(self):
        """ Reports other errors as ``{index: ticket}`` mapping.

            Includes synthetic ``submission-failed`` and ``cancelled``
            tickets of batches that did not make it.
        """
        return dict((idx, t) for idx, t in enumerate(self.tickets)
                    if t.error is not None and not t.error.device_failure)

    def needs_retry(self):
        """ Returns True if there are messages that could be retried. """
        return any(t.error is not None and t.error.retryable for t in self.tickets)

    def retry(self):
        """ Returns list of :class:`PushMessage` that could be retried.

            When and how many times to retry is up to you.
        """
        return [msg for msg, t in zip(self.messages, self.tickets)
                if t.error is not None and t.error.retryable]


class PushClient(object):
    """ Expo push service client. """
    BASE_URL = 'https://exp.host/--/api/v2'
    # limits of the push service per request
    MAX_BATCH_SIZE = 100
    MAX_RECEIPT_BATCH_SIZE = 300

    # Gateway class to use
    gateway_class = Gateway

    # How often to look at the cancel event while batches are in flight.
    poll_interval = 0.1

    def __init__(self, access_token, base_url=None, batch_size=100, enable_gzip=True,
                 gzip_threshold=1024, request_timeout=30, parallelism=1, fail_fast=False,
                 receipt_batch_size=300, session=None):
        """ Push service client.

            Every send is split into batches of at most ``batch_size``
            messages. Up to ``parallelism`` batches are submitted at once.
            A failed batch never fails the whole send, its messages get
            ``submission-failed`` tickets instead. With ``fail_fast``
            batches not yet started are abandoned after first failure
            and a message that can not be encoded fails the send before
            anything is submitted.

            :Arguments:
                - `access_token` (str): access token of your Expo account.
                - `base_url` (str): API root, override for testing.
                - `batch_size` (int): messages per request, at most 100.
                - `enable_gzip` (bool): compress request bodies.
                - `gzip_threshold` (int): compress only bodies larger than this many bytes, 0 to always compress.
                - `request_timeout` (float): timeout of one request in seconds.
                - `parallelism` (int): maximum number of batches in flight.
                - `fail_fast` (bool): stop sending after first failed batch.
                - `receipt_batch_size` (int): receipt ids per request, at most 300.
                - `session` (``requests.Session``): HTTP session to use.
        """
        if not isinstance(access_token, str) or not access_token:
            raise ConfigError("access token is required")

        self.batch_size = self._check_int('batch size', batch_size, 1, self.MAX_BATCH_SIZE)
        self.receipt_batch_size = self._check_int('receipt batch size', receipt_batch_size,
                                                  1, self.MAX_RECEIPT_BATCH_SIZE)
        self.parallelism = self._check_int('parallelism', parallelism, 1, None)
        self._check_int('gzip threshold', gzip_threshold, 0, None)

        if request_timeout is not None and (isinstance(request_timeout, bool) or
                                            not isinstance(request_timeout, (int, float)) or
                                            request_timeout <= 0):
            raise ConfigError("invalid request timeout: {0!r}".format(request_timeout))

        self.fail_fast = fail_fast
        self.gateway = self.gateway_class(access_token, base_url or self.BASE_URL,
                                          enable_gzip=enable_gzip,
                                          gzip_threshold=gzip_threshold,
                                          request_timeout=request_timeout,
                                          session=session)

    @staticmethod
    def _check_int(name, value, low, high):
        if (isinstance(value, bool) or not isinstance(value, int) or value < low or
                (high is not None and value > high)):
            raise ConfigError("invalid {0}: {1!r}".format(name, value))

        return value

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def close(self):
        self.gateway.close()

    def send(self, messages, deadline=None, cancel=None):
        """ Send the messages.

            The method blocks until every batch is answered, failed or
            cancelled. Batches not started, or still in flight when
            ``deadline`` passes or ``cancel`` event is set, are reported
            with ``cancelled`` tickets.

            :Arguments:
                - `messages` (list): list of :class:`PushMessage`.
                - `deadline` (datetime or timedelta or float): absolute deadline, or time (seconds) from now.
                - `cancel` (``threading.Event``): set it to abandon the send.

            :Returns:
                :class:`SubmissionResult` with exactly one ticket per message.
        """
        messages = list(messages)
        chunks = batches(messages, self.batch_size)
        reconciler = Reconciler(len(messages))
        if not chunks:
            return reconciler.result(messages)

        stop_at = self._stop_at(deadline)
        pending = deque(self._encode(chunks, reconciler))
        if pending:
            self._submit(pending, reconciler, stop_at, cancel)

        result = reconciler.result(messages)
        logger.info("Sent %d messages in %d batches: %d accepted, %d failed",
                    len(messages), len(chunks), len(result.ids), len(messages) - len(result.ids))
        return result

    def send_one(self, message, deadline=None, cancel=None):
        """ Send single message. Returns :class:`PushTicket`. """
        return self.send([message], deadline, cancel)[0]

    def _encode(self, chunks, reconciler):
        ret = []
        for batch in chunks:
            try:
                ret.append((batch, batch.get_json_payload()))
            except SerializationError as exc:
                if self.fail_fast:
                    raise

                logger.warning("Batch %r can not be encoded: %s", batch, exc)
                reconciler.fail(batch, SUBMISSION_FAILED, str(exc))

        return ret

    def _submit(self, pending, reconciler, stop_at, cancel):
        running = {}
        aborted = None
        stopped = None
        executor = futures.ThreadPoolExecutor(max_workers=self.parallelism)
        try:
            while running or (pending and aborted is None):
                stopped = self._stopped(stop_at, cancel)
                if stopped:
                    break

                while pending and aborted is None and len(running) < self.parallelism:
                    timeout = self._request_timeout(stop_at)
                    if timeout is not None and timeout <= 0:
                        # deadline passed since the last check, leave the rest pending
                        stopped = "deadline exceeded"
                        break

                    batch, payload = pending.popleft()
                    future = executor.submit(self.gateway.submit_payload, payload, len(batch), timeout)
                    running[future] = batch

                if stopped:
                    break

                done, _ = futures.wait(list(running), timeout=self._wait_timeout(stop_at, cancel),
                                       return_when=futures.FIRST_COMPLETED)
                for future in done:
                    batch = running.pop(future)
                    if not self._collect(future, batch, reconciler) and self.fail_fast:
                        aborted = "abandoned after failure of {0!r}".format(batch)
        finally:
            executor.shutdown(wait=False)

        reason = stopped or aborted
        cancelled = list(pending)
        for future, batch in running.items():
            if future.done():
                self._collect(future, batch, reconciler)
            else:
                # in-flight request is abandoned, its answer is ignored
                future.cancel()
                cancelled.append((batch, None))

        for batch, _ in cancelled:
            reconciler.fail(batch, CANCELLED, reason)

        if cancelled:
            logger.warning("Send %s, %d batches cancelled", reason, len(cancelled))

    def _collect(self, future, batch, reconciler):
        try:
            reconciler.place(batch, future.result())
        except ClientError as exc:
            logger.warning("Batch %r failed: %s", batch, exc)
            reconciler.fail(batch, SUBMISSION_FAILED, str(exc))
            return False

        return True

    @staticmethod
    def _stop_at(deadline):
        if deadline is None:
            return None

        if isinstance(deadline, datetime.datetime):
            deadline = deadline - datetime.datetime.now(deadline.tzinfo)

        if isinstance(deadline, datetime.timedelta):
            deadline = deadline.total_seconds()

        return time.monotonic() + deadline

    @staticmethod
    def _stopped(stop_at, cancel):
        if cancel is not None and cancel.is_set():
            return "cancelled by caller"

        if stop_at is not None and time.monotonic() >= stop_at:
            return "deadline exceeded"

        return None

    def _request_timeout(self, stop_at):
        timeout = self.gateway.request_timeout
        if stop_at is not None:
            left = stop_at - time.monotonic()
            timeout = left if timeout is None else min(timeout, left)

        return timeout

    def _wait_timeout(self, stop_at, cancel):
        timeout = self.poll_interval if cancel is not None else None
        if stop_at is not None:
            left = max(stop_at - time.monotonic(), 0)
            timeout = left if timeout is None else min(timeout, left)

        return timeout

    def get_receipts(self, ids):
        """ Fetch delivery receipts for ticket ids.

            Ids are requested in chunks of ``receipt_batch_size``. Ids of a
            chunk that failed get synthetic ``submission-failed`` receipts,
            ask for them again later. Ids unknown to the push service are
            missing in the result.

            :Returns:
                ``{ticket id: PushReceipt}``
        """
        ids = list(ids)
        ret = {}
        for offset in range(0, len(ids), self.receipt_batch_size):
            chunk = ids[offset:offset + self.receipt_batch_size]
            try:
                ret.update(self.gateway.fetch_receipts(chunk))
            except (ClientError, SerializationError) as exc:
                logger.warning("Receipts %d-%d failed: %s", offset, offset + len(chunk), exc)
                for rid in chunk:
                    ret[rid] = PushReceipt.failure(SUBMISSION_FAILED, str(exc), id=rid)

        return ret

    def get_receipt(self, ticket_id):
        """ Fetch delivery receipt of one ticket. Returns None if it is not ready yet. """
        return self.get_receipts([ticket_id]).get(ticket_id)
