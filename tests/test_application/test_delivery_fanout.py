"""
Tests for send_all channel fan-out
"""
import threading

from followup.application.delivery import MessageContent, Recipient, SendResult, send_all

RECIPIENT = Recipient(1, "ada@example.com")
CONTENT = MessageContent(kind="digest", subject="Your week", text="Summary")
WAIT_SECONDS = 2


class RendezvousSender:
    """Records its thread and whether its peer had started before the wait ran out."""

    def __init__(self, uses_session: bool, started: threading.Event, peer_started: threading.Event):
        self.uses_session = uses_session
        self.started = started
        self.peer_started = peer_started
        self.overlapped = False
        self.thread = None

    def send(self, recipient, content):
        self.thread = threading.current_thread()
        self.started.set()
        self.overlapped = self.peer_started.wait(WAIT_SECONDS)
        return SendResult(success=True)


def _pair():
    """A network sender and a session-bound writer that each wait for the other."""
    network_started, inbox_started = threading.Event(), threading.Event()
    return (
        RendezvousSender(False, network_started, inbox_started),
        RendezvousSender(True, inbox_started, network_started),
    )


class TestSendAll:
    def test_network_send_overlaps_inline_write(self):
        email, in_app = _pair()

        results = send_all({"email": email, "in_app": in_app}, RECIPIENT, CONTENT)

        assert results["email"].success and results["in_app"].success
        assert email.overlapped is True
        assert in_app.overlapped is True

    def test_inline_write_stays_on_calling_thread(self):
        email, in_app = _pair()

        send_all({"email": email, "in_app": in_app}, RECIPIENT, CONTENT)

        assert in_app.thread is threading.current_thread()
        assert email.thread is not threading.current_thread()

    def test_lone_network_send_runs_inline(self):
        email = RendezvousSender(False, threading.Event(), threading.Event())
        email.peer_started.set()

        results = send_all({"email": email}, RECIPIENT, CONTENT)

        assert results["email"].success
        assert email.thread is threading.current_thread()

    def test_sender_exception_becomes_failed_result(self):
        class Broken:
            uses_session = False

            def send(self, recipient, content):
                raise RuntimeError("provider exploded")

        in_app = RendezvousSender(True, threading.Event(), threading.Event())
        in_app.peer_started.set()

        results = send_all({"email": Broken(), "in_app": in_app}, RECIPIENT, CONTENT)

        assert results["email"].success is False
        assert results["in_app"].success is True
