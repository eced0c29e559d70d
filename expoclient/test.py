import unittest, pickle, json, gzip
import time
import datetime
import threading
from mock import patch, Mock

import requests

from expoclient import *


def make_messages(count, **kwargs):
    return [PushMessage("ExponentPushToken[{0}]".format(i), body="hello {0}".format(i), **kwargs)
            for i in range(count)]


def make_response(status, payload=None, text=''):
    response = Mock()
    response.status_code = status
    if payload is None:
        response.json.side_effect = ValueError("No JSON object could be decoded")
        response.text = text
    else:
        response.json.return_value = payload
        response.text = json.dumps(payload)

    return response


def decode_body(data, headers):
    if headers.get('Content-Encoding') == 'gzip':
        data = gzip.decompress(data)

    return json.loads(data.decode('utf-8'))


class FakeService(object):
    """ Answers every message with ticket ``id-<token>``. """

    def __init__(self, errors=None, fail_on=None):
        # {token: error code}
        self.errors = errors or {}
        # tokens that break the whole request
        self.fail_on = fail_on or set()
        self.requests = []
        self._lock = threading.Lock()

    def __call__(self, url, data=None, headers=None, timeout=None):
        items = decode_body(data, headers)
        with self._lock:
            self.requests.append((url, headers, items))

        if url.endswith('/push/getReceipts'):
            return make_response(200, {'data': dict((rid, {'status': 'ok'}) for rid in items['ids'])})

        if any(item['to'] in self.fail_on for item in items):
            raise requests.ConnectionError("connection refused")

        tickets = []
        for item in items:
            code = self.errors.get(item['to'])
            if code:
                tickets.append({'status': 'error', 'message': 'failed', 'details': {'error': code}})
            else:
                tickets.append({'status': 'ok', 'id': 'id-' + item['to']})

        return make_response(200, {'data': tickets})

    def batch_sizes(self):
        return sorted(len(items) for _, _, items in self.requests)


class ClassifierTest(unittest.TestCase):
    """ Test error classification. """

    def test_known(self):
        for code in ('DeviceNotRegistered', 'MessageTooBig', 'MessageRateExceeded',
                     'InvalidCredentials', 'MismatchSenderId'):
            err = classify(code)
            self.assertEqual(err.kind, code)
            self.assertEqual(err.code, code)
            self.assertFalse(err.is_unknown)

        self.assertTrue(classify('DeviceNotRegistered').device_failure)
        self.assertFalse(classify('DeviceNotRegistered').retryable)
        self.assertTrue(classify('MessageRateExceeded').retryable)
        self.assertFalse(classify('MessageRateExceeded').device_failure)
        self.assertFalse(classify('InvalidCredentials').retryable)

    def test_unknown(self):
        err = classify("some-new-code-not-in-table")
        self.assertTrue(err.is_unknown)
        self.assertEqual(err.kind, ClassifiedError.UNKNOWN)
        self.assertEqual(err.code, "some-new-code-not-in-table")
        self.assertEqual(repr(err), "Unknown('some-new-code-not-in-table')")
        self.assertTrue(err.retryable)

        # synthetic codes and garbage
        self.assertTrue(classify(SUBMISSION_FAILED).is_unknown)
        self.assertTrue(classify(None).is_unknown)
        self.assertTrue(classify(42).is_unknown)
        self.assertTrue(classify({'error': 1}).is_unknown)

    def test_equality(self):
        self.assertEqual(classify('MessageTooBig'), classify('MessageTooBig'))
        self.assertNotEqual(classify('foo'), classify('bar'))
        self.assertEqual(len(set([classify('foo'), classify('foo')])), 1)


class PushMessageTest(unittest.TestCase):
    """ Test PushMessage API. """

    def setUp(self):
        self.msg = PushMessage("ExponentPushToken[abc]", title="title", body="body",
                               data={'key': [1, 2]}, channel_id="default", badge=3,
                               category_id="cat", mutable_content=True)

    def test_as_dict(self):
        self.assertEqual(self.msg.as_dict(), {
            'to': "ExponentPushToken[abc]",
            'title': "title",
            'body': "body",
            'data': {'key': [1, 2]},
            'badge': 3,
            'channelId': "default",
            'categoryId': "cat",
            'mutableContent': True,
        })

        # only what is set
        self.assertEqual(PushMessage("tok", data={}).as_dict(), {'to': "tok", 'data': {}})

    def test_invalid(self):
        self.assertRaises(ValueError, PushMessage, "", body="body")
        self.assertRaises(ValueError, PushMessage, None, body="body")
        self.assertRaises(ValueError, PushMessage, "tok")
        self.assertRaises(ValueError, PushMessage, "tok", data=[1, 2])
        self.assertRaises(ValueError, PushMessage, "tok", body="body", priority="urgent")

    def test_expiration(self):
        now = int(time.time())
        msg = PushMessage("tok", body="body", expiration=datetime.timedelta(hours=1))
        self.assertTrue(now + 3500 <= msg.expiration <= now + 3700)

        # aware datetime is not shifted by local timezone
        when = datetime.datetime(2030, 1, 1, tzinfo=datetime.timezone.utc)
        msg = PushMessage("tok", body="body", expiration=when)
        self.assertEqual(msg.expiration, 1893456000)
        when = datetime.datetime(2030, 1, 1, 2, tzinfo=datetime.timezone(datetime.timedelta(hours=2)))
        self.assertEqual(PushMessage("tok", body="body", expiration=when).expiration, 1893456000)

        msg = PushMessage("tok", body="body", expiration=1500000000)
        self.assertEqual(msg.as_dict()['expiration'], 1500000000)

    def test_serialization(self):
        # standard pickle
        copy = pickle.loads(pickle.dumps(self.msg))
        self.assertEqual(copy.as_dict(), self.msg.as_dict())

        # custom, JSON/XML/etc and store/send
        state = json.loads(json.dumps(self.msg.__getstate__()))
        copy = PushMessage(**state)
        self.assertEqual(copy.as_dict(), self.msg.as_dict())

    def test_push_token(self):
        self.assertTrue(is_push_token("ExponentPushToken[xxxxxxxxxxxxxxxxxxxxxx]"))
        self.assertTrue(is_push_token("ExpoPushToken[xxxxxxxxxxxxxxxxxxxxxx]"))
        self.assertFalse(is_push_token("ExpoPushToken[]"))
        self.assertFalse(is_push_token("0123456789ABCDEF"))
        self.assertFalse(is_push_token(None))


class BatchTest(unittest.TestCase):
    """ Test batching and encoding. """

    def test_empty(self):
        self.assertEqual(batches([], 100), [])

    def test_partition(self):
        messages = make_messages(250)
        for size in (1, 7, 100, 250, 1000):
            chunks = batches(messages, size)
            self.assertTrue(all(0 < len(b) <= size for b in chunks))

            joined = []
            for batch in chunks:
                self.assertEqual(batch.offset, len(joined))
                joined.extend(batch)

            self.assertEqual(len(joined), len(messages))
            self.assertTrue(all(a is b for a, b in zip(joined, messages)))

        self.assertEqual([len(b) for b in batches(messages, 100)], [100, 100, 50])
        self.assertEqual([b.offset for b in batches(messages, 100)], [0, 100, 200])

    def test_invalid_size(self):
        for size in (0, -1, "10", 1.5, True, None):
            self.assertRaises(ConfigError, batches, make_messages(3), size)

    def test_empty_batch(self):
        self.assertRaises(ValueError, Batch, [])

    def test_payload(self):
        messages = [PushMessage("tok1", title=u"冇蚚", sound="default"),
                    PushMessage("tok2", data={'n': 1.5}, priority="high", ttl=60)]
        payload = Batch(messages).get_json_payload()

        self.assertIsInstance(payload, bytes)
        self.assertNotIn(b"null", payload)
        self.assertNotIn(b" ", payload)
        self.assertEqual(json.loads(payload.decode('utf-8')), [
            {'to': "tok1", 'title': u"冇蚚", 'sound': "default"},
            {'to': "tok2", 'data': {'n': 1.5}, 'priority': "high", 'ttl': 60},
        ])

    def test_not_serializable(self):
        self.assertRaises(SerializationError, Batch([PushMessage("tok", data={'n': float('nan')})]).get_json_payload)
        self.assertRaises(SerializationError, Batch([PushMessage("tok", data={'n': float('inf')})]).get_json_payload)
        self.assertRaises(SerializationError, Batch([PushMessage("tok", data={'when': datetime.date.today()})]).get_json_payload)

    def test_compress(self):
        payload = Batch(make_messages(10)).get_json_payload()
        self.assertEqual(gzip.decompress(compress(payload)), payload)


class GatewayTest(unittest.TestCase):
    """ Test HTTP conversation. """

    def setUp(self):
        self.session = Mock()
        self.gateway = Gateway("secret", "https://push.example.com/api/", gzip_threshold=0,
                               request_timeout=5, session=self.session)
        self.batch = Batch(make_messages(2))

    def test_submit(self):
        self.session.post.return_value = make_response(200, {'data': [
            {'status': 'ok', 'id': 'XXXX-1'},
            {'status': 'error', 'message': 'not registered', 'details': {'error': 'DeviceNotRegistered'}},
        ]})

        envelope = self.gateway.submit(self.batch)
        self.assertEqual(len(envelope), 2)
        self.assertTrue(envelope.items[0].is_ok)
        self.assertEqual(envelope.items[0].id, 'XXXX-1')
        self.assertEqual(envelope.items[1].code, 'DeviceNotRegistered')
        self.assertEqual(envelope.items[1].error.kind, ClassifiedError.DEVICE_NOT_REGISTERED)

        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], "https://push.example.com/api/push/send")
        self.assertEqual(kwargs['timeout'], 5)
        headers = kwargs['headers']
        self.assertEqual(headers['Authorization'], "Bearer secret")
        self.assertEqual(headers['Content-Type'], "application/json")
        self.assertEqual(headers['Accept'], "application/json")
        self.assertEqual(headers['Content-Encoding'], "gzip")
        self.assertEqual(decode_body(kwargs['data'], headers), [m.as_dict() for m in self.batch])

    def test_no_gzip(self):
        self.session.post.return_value = make_response(200, {'data': [
            {'status': 'ok', 'id': '1'}, {'status': 'ok', 'id': '2'}]})

        self.gateway.enable_gzip = False
        self.gateway.submit(self.batch)
        _, kwargs = self.session.post.call_args
        self.assertNotIn('Content-Encoding', kwargs['headers'])
        self.assertEqual(kwargs['data'], self.batch.get_json_payload())

        # small bodies are not worth compressing
        self.gateway.enable_gzip = True
        self.gateway.gzip_threshold = 1024
        self.gateway.submit(self.batch)
        _, kwargs = self.session.post.call_args
        self.assertNotIn('Content-Encoding', kwargs['headers'])

    def test_transport_error(self):
        for exc in (requests.ConnectionError("refused"), requests.Timeout("timed out"),
                    requests.exceptions.SSLError("bad certificate")):
            self.session.post.side_effect = exc
            with self.assertRaises(TransportError) as ctx:
                self.gateway.submit(self.batch)

            self.assertIs(ctx.exception.cause, exc)

    def test_http_error(self):
        self.session.post.return_value = make_response(502, text="Bad Gateway")
        with self.assertRaises(HttpError) as ctx:
            self.gateway.submit(self.batch)

        self.assertEqual(ctx.exception.status, 502)
        self.assertEqual(ctx.exception.body, "Bad Gateway")

    def test_rejected(self):
        errors = {'errors': [{'code': 'UNAUTHORIZED', 'message': 'Access token is invalid'}]}
        for status in (401, 200):
            self.session.post.return_value = make_response(status, errors)
            with self.assertRaises(RejectedRequestError) as ctx:
                self.gateway.submit(self.batch)

            self.assertEqual(ctx.exception.status, status)
            self.assertEqual(ctx.exception.codes, ['UNAUTHORIZED'])
            self.assertIn('Access token is invalid', str(ctx.exception))

    def test_protocol_error(self):
        bodies = [
            make_response(200, text="<html>"),
            make_response(200, []),
            make_response(200, {'result': []}),
            # count mismatch is never papered over
            make_response(200, {'data': [{'status': 'ok', 'id': '1'}]}),
            make_response(200, {'data': [{'status': 'ok', 'id': '1'}] * 3}),
            make_response(200, {'data': [{'status': 'ok', 'id': '1'}, {'status': 'maybe'}]}),
            make_response(200, {'data': [{'status': 'ok', 'id': '1'}, {'status': 'ok'}]}),
            make_response(200, {'data': [{'status': 'ok', 'id': '1'}, 'ok']}),
            make_response(200, {'data': [{'status': 'ok', 'id': '1'}, {'status': 'error', 'details': 'oops'}]}),
        ]
        for response in bodies:
            self.session.post.return_value = response
            self.assertRaises(ProtocolError, self.gateway.submit, self.batch)

    def test_fetch_receipts(self):
        self.session.post.return_value = make_response(200, {'data': {
            'id-1': {'status': 'ok'},
            'id-2': {'status': 'error', 'message': 'gone', 'details': {'error': 'DeviceNotRegistered'}},
        }})

        receipts = self.gateway.fetch_receipts(['id-1', 'id-2', 'id-3'])
        self.assertEqual(sorted(receipts.keys()), ['id-1', 'id-2'])
        self.assertTrue(receipts['id-1'].is_ok)
        self.assertEqual(receipts['id-1'].id, 'id-1')
        self.assertTrue(receipts['id-2'].error.device_failure)

        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], "https://push.example.com/api/push/getReceipts")
        self.assertEqual(decode_body(kwargs['data'], kwargs['headers']), {'ids': ['id-1', 'id-2', 'id-3']})

        self.session.post.return_value = make_response(200, {'data': []})
        self.assertRaises(ProtocolError, self.gateway.fetch_receipts, ['id-1'])

    @patch('expoclient.push.requests.Session')
    def test_session(self, mysession):
        gateway = Gateway("secret", "https://push.example.com")
        mysession.return_value.post.return_value = make_response(200, {'data': [
            {'status': 'ok', 'id': '1'}, {'status': 'ok', 'id': '2'}]})

        gateway.submit(self.batch)
        gateway.submit(self.batch)
        self.assertEqual(mysession.call_count, 1)

        gateway.close()
        self.assertTrue(mysession.return_value.close.called)

        # borrowed session is left alone
        self.gateway.close()
        self.assertFalse(self.session.close.called)


class PushClientTest(unittest.TestCase):
    """ Test the send pipeline. """

    def setUp(self):
        self.service = FakeService()
        self.session = Mock()
        self.session.post.side_effect = self.service

    def client(self, **kwargs):
        return PushClient("secret", base_url="https://push.example.com", session=self.session, **kwargs)

    def test_config(self):
        self.assertRaises(ConfigError, PushClient, "")
        self.assertRaises(ConfigError, PushClient, None)
        for kwargs in ({'batch_size': 0}, {'batch_size': 101}, {'batch_size': -5},
                       {'receipt_batch_size': 301}, {'parallelism': 0},
                       {'request_timeout': 0}, {'request_timeout': -1}, {'gzip_threshold': -1}):
            self.assertRaises(ConfigError, self.client, **kwargs)

        self.assertFalse(self.session.post.called)

        client = PushClient("secret")
        self.assertEqual(client.batch_size, 100)
        self.assertEqual(client.gateway.push_url, "https://exp.host/--/api/v2/push/send")
        self.assertTrue(client.gateway.enable_gzip)

    def test_empty(self):
        result = self.client().send([])
        self.assertEqual(len(result), 0)
        self.assertEqual(list(result), [])
        self.assertFalse(self.session.post.called)

    def test_round_trip(self):
        messages = make_messages(150)
        self.service.errors = {messages[110].to: 'DeviceNotRegistered',
                               messages[111].to: 'DeviceNotRegistered'}

        result = self.client(batch_size=100).send(messages)

        self.assertEqual(self.service.batch_sizes(), [50, 100])
        self.assertEqual(len(result), 150)
        for idx, ticket in enumerate(result):
            if idx in (110, 111):
                self.assertFalse(ticket.is_ok)
                self.assertEqual(ticket.error.kind, ClassifiedError.DEVICE_NOT_REGISTERED)
            else:
                self.assertTrue(ticket.is_ok)
                self.assertEqual(ticket.id, 'id-' + messages[idx].to)

        self.assertEqual(sorted(result.failed.keys()), [110, 111])
        self.assertEqual(result.errors, {})
        self.assertFalse(result.needs_retry())
        self.assertEqual(len(result.ids), 148)

    def test_order(self):
        messages = make_messages(57)
        for size in (1, 3, 10, 57, 100):
            for parallelism in (1, 4):
                result = self.client(batch_size=size, parallelism=parallelism).send(messages)
                self.assertEqual(len(result), len(messages))
                for (msg, ticket) in result.pairs():
                    self.assertEqual(ticket.id, 'id-' + msg.to)

                self.assertEqual([t.id for t in result], ['id-' + m.to for m in messages])

    def test_isolation(self):
        messages = make_messages(100)
        self.service.fail_on = set([messages[42].to])

        for parallelism in (1, 3):
            result = self.client(batch_size=10, parallelism=parallelism).send(messages)

            self.assertEqual(len(result), 100)
            for idx, ticket in enumerate(result):
                if 40 <= idx < 50:
                    self.assertEqual(ticket.code, SUBMISSION_FAILED)
                    self.assertIn("connection refused", ticket.message)
                    self.assertTrue(ticket.error.is_unknown)
                else:
                    self.assertEqual(ticket.id, 'id-' + messages[idx].to)

            self.assertEqual(sorted(result.errors.keys()), list(range(40, 50)))
            self.assertTrue(result.needs_retry())
            self.assertEqual(result.retry(), messages[40:50])

    def test_fail_fast(self):
        messages = make_messages(100)
        self.service.fail_on = set([messages[42].to])

        result = self.client(batch_size=10, fail_fast=True).send(messages)

        self.assertEqual(self.session.post.call_count, 5)
        self.assertEqual(len(result), 100)
        self.assertTrue(all(t.is_ok for t in result[:40]))
        self.assertTrue(all(t.code == SUBMISSION_FAILED for t in result[40:50]))
        self.assertTrue(all(t.code == CANCELLED for t in result[50:]))

    def test_fail_fast_in_flight(self):
        messages = make_messages(50)
        self.service.fail_on = set([messages[0].to])

        def post(url, data=None, headers=None, timeout=None):
            # siblings are still in flight when the first batch fails
            if decode_body(data, headers)[0]['to'] != messages[0].to:
                time.sleep(0.3)

            return self.service(url, data=data, headers=headers, timeout=timeout)

        self.session.post.side_effect = post
        result = self.client(batch_size=10, parallelism=3, fail_fast=True).send(messages)

        self.assertEqual(self.session.post.call_count, 3)
        self.assertEqual(len(result), 50)
        self.assertTrue(all(t.code == SUBMISSION_FAILED for t in result[:10]))
        for idx in range(10, 30):
            self.assertEqual(result[idx].id, 'id-' + messages[idx].to)

        self.assertTrue(all(t.code == CANCELLED for t in result[30:]))

    def test_rejected_batch(self):
        self.session.post.side_effect = None
        self.session.post.return_value = make_response(401, {'errors': [
            {'code': 'UNAUTHORIZED', 'message': 'bad token'}]})

        result = self.client(batch_size=2).send(make_messages(3))
        self.assertEqual(len(result), 3)
        self.assertEqual(self.session.post.call_count, 2)
        self.assertTrue(all(t.code == SUBMISSION_FAILED for t in result))
        self.assertIn("UNAUTHORIZED", result[0].message)

    def test_serialization_isolated(self):
        messages = make_messages(30)
        messages[15] = PushMessage("ExponentPushToken[15]", data={'n': float('nan')})

        result = self.client(batch_size=10).send(messages)

        self.assertEqual(self.session.post.call_count, 2)
        self.assertEqual(len(result), 30)
        self.assertTrue(all(t.is_ok for t in result[:10]))
        self.assertTrue(all(t.code == SUBMISSION_FAILED for t in result[10:20]))
        self.assertTrue(all(t.is_ok for t in result[20:]))

    def test_serialization_fail_fast(self):
        messages = make_messages(30)
        messages[25] = PushMessage("ExponentPushToken[25]", data={'n': float('nan')})

        client = self.client(batch_size=10, fail_fast=True)
        self.assertRaises(SerializationError, client.send, messages)
        # nothing has been sent
        self.assertFalse(self.session.post.called)

    def test_gzip_transparency(self):
        messages = make_messages(120)
        self.service.errors = {messages[3].to: 'MessageTooBig', messages[101].to: 'brand-new-code'}

        zipped = self.client(gzip_threshold=0).send(messages)
        plain = self.client(enable_gzip=False).send(messages)

        encodings = [headers.get('Content-Encoding') for _, headers, _ in self.service.requests]
        self.assertEqual(encodings, ['gzip', 'gzip', None, None])

        def observable(result):
            return [(t.status, t.id, t.code, t.error) for t in result]

        self.assertEqual(observable(zipped), observable(plain))
        self.assertEqual(zipped[101].error, classify('brand-new-code'))

    def test_cancel_before(self):
        cancel = threading.Event()
        cancel.set()

        result = self.client(batch_size=10).send(make_messages(25), cancel=cancel)
        self.assertEqual(len(result), 25)
        self.assertTrue(all(t.code == CANCELLED for t in result))
        self.assertFalse(self.session.post.called)

    def test_cancel_during(self):
        cancel = threading.Event()
        calls = []

        def post(*args, **kwargs):
            calls.append(1)
            if len(calls) == 2:
                cancel.set()

            return self.service(*args, **kwargs)

        self.session.post.side_effect = post
        result = self.client(batch_size=10).send(make_messages(30), cancel=cancel)

        self.assertEqual(len(result), 30)
        self.assertEqual(len(calls), 2)
        self.assertTrue(all(t.is_ok for t in result[:10]))
        self.assertTrue(all(t.is_ok or t.code == CANCELLED for t in result[10:20]))
        self.assertTrue(all(t.code == CANCELLED for t in result[20:]))

    def test_deadline(self):
        result = self.client(batch_size=10).send(make_messages(25), deadline=datetime.timedelta(0))
        self.assertTrue(all(t.code == CANCELLED for t in result))
        self.assertFalse(self.session.post.called)

        past = datetime.datetime.now() - datetime.timedelta(minutes=1)
        result = self.client(batch_size=10).send(make_messages(5), deadline=past)
        self.assertTrue(all(t.code == CANCELLED for t in result))
        self.assertFalse(self.session.post.called)

    def test_deadline_in_flight(self):
        def slow_post(*args, **kwargs):
            time.sleep(1)
            return self.service(*args, **kwargs)

        self.session.post.side_effect = slow_post
        before = time.time()
        result = self.client(batch_size=10).send(make_messages(20), deadline=0.2)

        self.assertLess(time.time() - before, 0.9)
        self.assertEqual(len(result), 20)
        self.assertTrue(all(t.code == CANCELLED for t in result))
        self.assertEqual(result[0].message, "deadline exceeded")

        # request timeout never exceeds the deadline
        _, kwargs = self.session.post.call_args
        self.assertLessEqual(kwargs['timeout'], 0.2)

    @patch('expoclient.push.time.monotonic')
    def test_deadline_between_checks(self, mymonotonic):
        # deadline set at 0.0 for 1.0, checked at 0.5, passed by the time requests are built
        mymonotonic.side_effect = [0.0, 0.5, 1.5] + [1.6] * 20

        result = self.client(batch_size=10, parallelism=3).send(make_messages(25), deadline=1.0)

        self.assertFalse(self.session.post.called)
        self.assertEqual(len(result), 25)
        self.assertTrue(all(t.code == CANCELLED for t in result))
        self.assertEqual(result[0].message, "deadline exceeded")

    def test_cancel_parallel(self):
        messages = make_messages(60)
        cancel = threading.Event()

        def post(*args, **kwargs):
            cancel.set()
            time.sleep(0.5)
            return self.service(*args, **kwargs)

        self.session.post.side_effect = post
        result = self.client(batch_size=10, parallelism=3).send(messages, cancel=cancel)

        self.assertLessEqual(self.session.post.call_count, 3)
        self.assertEqual(len(result), 60)
        for idx, ticket in enumerate(result):
            self.assertIsNotNone(ticket)
            if ticket.is_ok:
                self.assertEqual(ticket.id, 'id-' + messages[idx].to)
            else:
                self.assertEqual(ticket.code, CANCELLED)

        self.assertTrue(all(t.code == CANCELLED for t in result[30:]))
        self.assertEqual(result.pairs()[45][0], messages[45])

    def test_send_one(self):
        ticket = self.client().send_one(PushMessage("ExponentPushToken[x]", body="hi"))
        self.assertTrue(ticket.is_ok)
        self.assertEqual(ticket.id, "id-ExponentPushToken[x]")

    def test_receipts(self):
        ids = ['id-{0}'.format(i) for i in range(350)]
        receipts = self.client().get_receipts(ids)

        self.assertEqual([len(items['ids']) for _, _, items in self.service.requests], [300, 50])
        self.assertEqual(len(receipts), 350)
        self.assertTrue(all(r.is_ok for r in receipts.values()))

        self.assertTrue(self.client().get_receipt('id-1').is_ok)

    def test_receipts_failure(self):
        responses = [make_response(200, {'data': {'id-0': {'status': 'ok'}}}),
                     make_response(503, text="Service Unavailable")]
        self.session.post.side_effect = responses

        receipts = self.client(receipt_batch_size=2).get_receipts(['id-0', 'id-1', 'id-2'])
        self.assertTrue(receipts['id-0'].is_ok)
        self.assertNotIn('id-1', receipts)
        self.assertEqual(receipts['id-2'].code, SUBMISSION_FAILED)
        self.assertEqual(receipts['id-2'].id, 'id-2')

    @patch('expoclient.push.requests.Session')
    def test_context_manager(self, mysession):
        mysession.return_value.post.side_effect = self.service
        with PushClient("secret") as client:
            client.send(make_messages(3))

        self.assertTrue(mysession.return_value.close.called)


class SubmissionResultTest(unittest.TestCase):
    """ Test SubmissionResult API. """

    def setUp(self):
        self.messages = make_messages(4)
        self.result = SubmissionResult(self.messages, [
            PushTicket('ok', id='a'),
            PushTicket('error', message='gone', details={'error': 'DeviceNotRegistered'}),
            PushTicket('error', message='slow down', details={'error': 'MessageRateExceeded'}),
            PushTicket.failure(CANCELLED, 'cancelled by caller'),
        ])

    def test_result(self):
        self.assertEqual(len(self.result), 4)
        self.assertEqual(self.result.ids, ['a'])
        self.assertEqual(list(self.result.failed.keys()), [1])
        self.assertEqual(sorted(self.result.errors.keys()), [2, 3])
        self.assertTrue(self.result.needs_retry())
        self.assertEqual(self.result.retry(), self.messages[2:])
        self.assertIs(self.result.pairs()[1][0], self.messages[1])

    def test_reconciler(self):
        chunks = batches(self.messages, 3)
        reconciler = Reconciler(4)
        # completion order does not matter
        reconciler.place(chunks[1], ResponseEnvelope([PushTicket('ok', id='d')]))
        self.assertRaises(RuntimeError, reconciler.result, self.messages)
        reconciler.place(chunks[0], ResponseEnvelope([PushTicket('ok', id=c) for c in 'abc']))
        self.assertEqual([t.id for t in reconciler.result(self.messages)], list('abcd'))

        self.assertRaises(ProtocolError, reconciler.place, chunks[1], ResponseEnvelope([]))


if __name__ == '__main__':
    unittest.main()
