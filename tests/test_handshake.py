import socket
import threading
import unittest

from pkauth.common.codec import encode_message
from pkauth.common.errors import (
    AuthenticationError,
    ConnectionReset,
    CredentialError,
    CredentialMismatch,
    GracefulClose,
    ProtocolViolation,
    UnknownUserError,
)
from pkauth.common.protocol import (
    AuthBegin,
    CertRequest,
    CertResponse,
    ChallengeRequest,
    ChallengeResponse,
    NewUserBegin,
    NoMessage,
    TextMessage,
)
from pkauth.crypto import sign
from pkauth.handshake import (
    GENERIC_FAILURE,
    SERVER_GREETING,
    ClientSession,
    ClientStage,
    ServerSession,
    ServerStage,
)
from pkauth.net.connection import Connection
from pkauth.net.transport import SocketTransport


class Worker(threading.Thread):
    """Runs fn on a thread and keeps its result or exception."""

    def __init__(self, fn):
        super().__init__(daemon=True)
        self.fn = fn
        self.result = None
        self.error = None

    def run(self):
        try:
            self.result = self.fn()
        except Exception as e:
            self.error = e


class HandshakeTestCase(unittest.TestCase):
    def setUp(self):
        self.client_sock, self.server_sock = socket.socketpair()
        self.client_sock.settimeout(5)
        self.server_sock.settimeout(5)
        self.client_conn = Connection(SocketTransport(self.client_sock))
        self.server_conn = Connection(SocketTransport(self.server_sock))

    def tearDown(self):
        self.client_sock.close()
        self.server_sock.close()

    def start(self, fn) -> Worker:
        worker = Worker(fn)
        worker.start()
        return worker

    def finish(self, worker: Worker) -> Worker:
        worker.join(5)
        self.assertFalse(worker.is_alive(), "worker did not finish")
        return worker


class TestHappyPath(HandshakeTestCase):
    def test_client_and_server_sessions(self):
        server = ServerSession(self.server_conn, server_name="localhost")
        client = ClientSession(self.client_conn, "sergei", credential_id="k1")
        worker = self.start(server.run)

        greeting = client.run()
        self.finish(worker)

        self.assertIsNone(worker.error)
        self.assertEqual(greeting, SERVER_GREETING)
        self.assertEqual(worker.result, "Hello from [sergei]")
        self.assertIs(client.stage, ClientStage.CLOSED)
        self.assertIs(server.stage, ServerStage.CLOSED)
        self.assertEqual(client.server_name, "localhost")
        self.assertEqual(server.username, "sergei")
        self.assertEqual(server.credential_id, "k1")
        self.assertIsNotNone(server.credentials.lookup("k1", "sergei"))
        self.assertIsNone(server.pending_challenge)

    def test_random_credential_id(self):
        server = ServerSession(self.server_conn)
        client = ClientSession(self.client_conn, "alice", closing_text="bye")
        worker = self.start(server.run)

        client.run()
        self.finish(worker)

        self.assertEqual(worker.result, "bye")
        self.assertEqual(server.credential_id, client.credential_id)

    def test_literal_wire_scenario(self):
        server = ServerSession(self.server_conn, server_name="localhost")
        worker = self.start(server.run)
        conn = self.client_conn
        private_key, public_key = sign.generate_keypair()

        conn.send(NewUserBegin(username="sergei"))
        cert_request = conn.receive()
        self.assertIsInstance(cert_request, CertRequest)
        self.assertEqual(cert_request.server_name, "localhost")
        self.assertEqual(len(cert_request.challenge), 128)

        conn.send(CertResponse(
            credential_id="k1",
            signature=sign.sign_challenge(private_key, cert_request.challenge),
            public_key=sign.encode_public_key(public_key),
        ))
        conn.send(AuthBegin(username="sergei"))

        challenge_request = conn.receive()
        self.assertIsInstance(challenge_request, ChallengeRequest)
        self.assertEqual(challenge_request.credential_id, "k1")
        self.assertEqual(len(challenge_request.challenge), 128)
        self.assertNotEqual(challenge_request.challenge, cert_request.challenge)

        conn.send(ChallengeResponse(
            credential_id="k1",
            signature=sign.sign_challenge(private_key, challenge_request.challenge),
        ))
        self.assertEqual(conn.receive(), TextMessage(body=SERVER_GREETING))
        conn.send(TextMessage(body="Hello from [sergei]"))

        self.finish(worker)
        self.assertIsNone(worker.error)
        self.assertEqual(worker.result, "Hello from [sergei]")

    def test_frames_packed_in_one_write(self):
        # Registration answer and AuthBegin arrive in a single write.
        server = ServerSession(self.server_conn)
        worker = self.start(server.run)
        private_key, public_key = sign.generate_keypair()

        self.client_conn.send(NewUserBegin(username="sergei"))
        c1 = self.client_conn.receive().challenge
        self.client_sock.sendall(
            encode_message(CertResponse(
                credential_id="k1",
                signature=sign.sign_challenge(private_key, c1),
                public_key=sign.encode_public_key(public_key),
            ))
            + encode_message(AuthBegin(username="sergei"))
        )
        c2 = self.client_conn.receive().challenge
        self.client_conn.send(ChallengeResponse(
            credential_id="k1", signature=sign.sign_challenge(private_key, c2),
        ))
        self.client_conn.receive()
        self.client_conn.send(TextMessage(body="done"))

        self.finish(worker)
        self.assertEqual(worker.result, "done")


class TestServerRejects(HandshakeTestCase):
    def register(self, private_key, public_key, credential_id="k1", username="sergei"):
        """Drive registration from the client side; returns the first challenge."""
        self.client_conn.send(NewUserBegin(username=username))
        challenge = self.client_conn.receive().challenge
        self.client_conn.send(CertResponse(
            credential_id=credential_id,
            signature=sign.sign_challenge(private_key, challenge),
            public_key=sign.encode_public_key(public_key),
        ))
        return challenge

    def assert_rejected(self, worker, error_type):
        self.assertEqual(self.client_conn.receive(), TextMessage(body=GENERIC_FAILURE))
        self.finish(worker)
        self.assertIsInstance(worker.error, error_type)

    def test_signature_over_other_challenge(self):
        server = ServerSession(self.server_conn)
        worker = self.start(server.run)
        private_key, public_key = sign.generate_keypair()

        self.client_conn.send(NewUserBegin(username="sergei"))
        self.client_conn.receive()
        self.client_conn.send(CertResponse(
            credential_id="k1",
            signature=sign.sign_challenge(private_key, sign.new_challenge()),
            public_key=sign.encode_public_key(public_key),
        ))

        self.assert_rejected(worker, AuthenticationError)
        self.assertIs(server.stage, ServerStage.CERT_REQUESTED)
        self.assertEqual(len(server.credentials), 0)

    def test_signature_from_other_key(self):
        server = ServerSession(self.server_conn)
        worker = self.start(server.run)
        signing_key, _ = sign.generate_keypair()
        _, claimed_key = sign.generate_keypair()

        self.register(signing_key, claimed_key)

        self.assert_rejected(worker, AuthenticationError)
        self.assertEqual(len(server.credentials), 0)

    def test_malformed_public_key(self):
        server = ServerSession(self.server_conn)
        worker = self.start(server.run)
        private_key, _ = sign.generate_keypair()

        self.client_conn.send(NewUserBegin(username="sergei"))
        challenge = self.client_conn.receive().challenge
        self.client_conn.send(CertResponse(
            credential_id="k1",
            signature=sign.sign_challenge(private_key, challenge),
            public_key=b"\x01" * 16,
        ))

        self.assert_rejected(worker, CredentialError)

    def test_truncated_signature(self):
        server = ServerSession(self.server_conn)
        worker = self.start(server.run)
        private_key, public_key = sign.generate_keypair()

        self.client_conn.send(NewUserBegin(username="sergei"))
        challenge = self.client_conn.receive().challenge
        self.client_conn.send(CertResponse(
            credential_id="k1",
            signature=sign.sign_challenge(private_key, challenge)[:32],
            public_key=sign.encode_public_key(public_key),
        ))

        self.assert_rejected(worker, CredentialError)

    def test_unknown_user_at_auth(self):
        server = ServerSession(self.server_conn)
        worker = self.start(server.run)
        private_key, public_key = sign.generate_keypair()

        self.register(private_key, public_key)
        self.client_conn.send(AuthBegin(username="mallory"))

        self.assert_rejected(worker, UnknownUserError)
        self.assertIs(server.stage, ServerStage.REGISTERED)

    def test_wrong_credential_id_at_auth(self):
        server = ServerSession(self.server_conn)
        worker = self.start(server.run)
        private_key, public_key = sign.generate_keypair()

        self.register(private_key, public_key)
        self.client_conn.send(AuthBegin(username="sergei"))
        challenge = self.client_conn.receive().challenge
        self.client_conn.send(ChallengeResponse(
            credential_id="k2", signature=sign.sign_challenge(private_key, challenge),
        ))

        self.assert_rejected(worker, AuthenticationError)

    def test_replayed_registration_signature(self):
        server = ServerSession(self.server_conn)
        worker = self.start(server.run)
        private_key, public_key = sign.generate_keypair()

        c1 = self.register(private_key, public_key)
        self.client_conn.send(AuthBegin(username="sergei"))
        self.client_conn.receive()
        self.client_conn.send(ChallengeResponse(
            credential_id="k1", signature=sign.sign_challenge(private_key, c1),
        ))

        self.assert_rejected(worker, AuthenticationError)
        self.assertIs(server.stage, ServerStage.CHALLENGE_SENT)
        self.assertIsNone(server.pending_challenge)

    def test_auth_before_registration(self):
        server = ServerSession(self.server_conn)
        worker = self.start(server.run)

        self.client_conn.send(ChallengeResponse(credential_id="k1", signature=b"\x00" * 64))

        self.finish(worker)
        self.assertIsInstance(worker.error, ProtocolViolation)
        self.assertIs(server.stage, ServerStage.IDLE)

    def test_auth_begin_instead_of_cert_response(self):
        server = ServerSession(self.server_conn)
        worker = self.start(server.run)

        self.client_conn.send(NewUserBegin(username="sergei"))
        self.client_conn.receive()
        self.client_conn.send(AuthBegin(username="sergei"))

        self.finish(worker)
        self.assertIsInstance(worker.error, ProtocolViolation)

    def test_empty_username(self):
        server = ServerSession(self.server_conn)
        worker = self.start(server.run)

        self.client_conn.send(NewUserBegin(username=""))

        self.finish(worker)
        self.assertIsInstance(worker.error, ProtocolViolation)


class TestServerEndOfStream(HandshakeTestCase):
    def test_graceful_close_before_first_message(self):
        server = ServerSession(self.server_conn)
        worker = self.start(server.run)

        self.client_sock.shutdown(socket.SHUT_WR)

        self.finish(worker)
        self.assertIsInstance(worker.error, GracefulClose)

    def test_close_after_tag_only(self):
        server = ServerSession(self.server_conn)
        worker = self.start(server.run)

        self.client_sock.sendall(encode_message(NewUserBegin(username="sergei"))[:4])
        self.client_sock.shutdown(socket.SHUT_WR)

        self.finish(worker)
        self.assertIsInstance(worker.error, ConnectionReset)

    def test_encoded_no_message_is_a_violation(self):
        server = ServerSession(self.server_conn)
        worker = self.start(server.run)

        self.client_conn.send(NoMessage())
        self.client_conn.send(NewUserBegin(username="sergei"))

        self.finish(worker)
        self.assertIsInstance(worker.error, ProtocolViolation)
        self.assertIs(server.stage, ServerStage.IDLE)


class TestClientRejects(HandshakeTestCase):
    def run_client(self, **kwargs):
        client = ClientSession(self.client_conn, "sergei", **kwargs)
        return client, self.start(client.run)

    def serve_registration(self):
        self.assertEqual(self.server_conn.receive(), NewUserBegin(username="sergei"))
        self.server_conn.send(CertRequest(server_name="localhost", challenge=sign.new_challenge()))
        response = self.server_conn.receive()
        self.assertIsInstance(response, CertResponse)
        self.assertEqual(self.server_conn.receive(), AuthBegin(username="sergei"))
        return response

    def test_challenge_request_before_auth_begin(self):
        client, worker = self.run_client()

        self.server_conn.receive()
        self.server_conn.send(ChallengeRequest(credential_id="k1", challenge=sign.new_challenge()))

        self.finish(worker)
        self.assertIsInstance(worker.error, ProtocolViolation)
        self.assertIs(client.stage, ClientStage.REGISTRATION_REQUESTED)

    def test_short_challenge(self):
        client, worker = self.run_client()

        self.server_conn.receive()
        self.server_conn.send(CertRequest(server_name="localhost", challenge=b"\x00" * 16))

        self.finish(worker)
        self.assertIsInstance(worker.error, ProtocolViolation)

    def test_server_asks_for_other_credential(self):
        client, worker = self.run_client(credential_id="k1")

        self.serve_registration()
        self.server_conn.send(ChallengeRequest(credential_id="k9", challenge=sign.new_challenge()))

        self.finish(worker)
        self.assertIsInstance(worker.error, CredentialMismatch)
        self.assertIs(client.stage, ClientStage.AUTH_REQUESTED)

    def test_generic_failure_from_server(self):
        client, worker = self.run_client()

        self.serve_registration()
        self.server_conn.send(TextMessage(body=GENERIC_FAILURE))

        self.finish(worker)
        self.assertIsInstance(worker.error, AuthenticationError)

    def test_generic_failure_instead_of_greeting(self):
        client, worker = self.run_client(credential_id="k1")

        self.serve_registration()
        self.server_conn.send(ChallengeRequest(credential_id="k1", challenge=sign.new_challenge()))
        self.assertIsInstance(self.server_conn.receive(), ChallengeResponse)
        self.server_conn.send(TextMessage(body=GENERIC_FAILURE))

        self.finish(worker)
        self.assertIsInstance(worker.error, AuthenticationError)
        self.assertIs(client.stage, ClientStage.AUTHENTICATED)
        # No closing text was sent.
        self.client_sock.shutdown(socket.SHUT_WR)
        self.assertEqual(self.server_conn.receive(), NoMessage())

    def test_encoded_no_message_instead_of_greeting(self):
        client, worker = self.run_client(credential_id="k1")

        self.serve_registration()
        self.server_conn.send(ChallengeRequest(credential_id="k1", challenge=sign.new_challenge()))
        self.server_conn.receive()
        self.server_conn.send(NoMessage())

        self.finish(worker)
        self.assertIsInstance(worker.error, ProtocolViolation)

    def test_signature_verifies_against_registered_key(self):
        client, worker = self.run_client(credential_id="k1")

        response = self.serve_registration()
        challenge = sign.new_challenge()
        self.server_conn.send(ChallengeRequest(credential_id="k1", challenge=challenge))
        answer = self.server_conn.receive()
        self.server_conn.send(TextMessage(body="hi"))
        self.assertEqual(self.server_conn.receive(), TextMessage(body="Hello from [sergei]"))

        self.finish(worker)
        self.assertIsNone(worker.error)
        public_key = sign.decode_public_key(response.public_key)
        self.assertTrue(sign.verify_signature(public_key, challenge, answer.signature))

    def test_steps_out_of_order(self):
        client = ClientSession(self.client_conn, "sergei")
        with self.assertRaises(ProtocolViolation):
            client.begin_auth()
        with self.assertRaises(ProtocolViolation):
            client.exchange_greeting()

    def test_empty_username_rejected(self):
        with self.assertRaises(ValueError):
            ClientSession(self.client_conn, "")


if __name__ == "__main__":
    unittest.main()
