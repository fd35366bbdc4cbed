from unittest.mock import MagicMock

import requests

from wrap_concierge.notifier import RESEND_API_URL, ResendEmailSender


def _session(status_code=200, body=None):
    session = MagicMock()
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body
    response.text = str(body)
    session.post.return_value = response
    return session


class TestResendEmailSender:
    def test_success_requires_provider_id(self):
        session = _session(body={"id": "email_123"})
        sender = ResendEmailSender("re_key", "Luigi <luigi@example.com>", timeout=4, session=session)

        result = sender.send("a@example.com", "Hello", "<p>Hi</p>", cc=["trish@example.com"])

        assert result.success
        assert result.message_id == "email_123"
        session.post.assert_called_once_with(
            RESEND_API_URL,
            json={
                "from": "Luigi <luigi@example.com>",
                "to": ["a@example.com"],
                "subject": "Hello",
                "html": "<p>Hi</p>",
                "cc": ["trish@example.com"],
            },
            headers={"Authorization": "Bearer re_key"},
            timeout=4,
        )

    def test_cc_never_duplicates_recipient(self):
        session = _session(body={"id": "email_123"})
        sender = ResendEmailSender("re_key", "from@example.com", session=session)

        sender.send("trish@example.com", "Hello", "<p>Hi</p>", cc=["trish@example.com"])

        assert "cc" not in session.post.call_args.kwargs["json"]

    def test_missing_key_does_not_call_provider(self):
        session = _session(body={"id": "email_123"})
        sender = ResendEmailSender("", "from@example.com", session=session)

        result = sender.send("a@example.com", "Hello", "<p>Hi</p>")

        assert not result.success
        assert result.error == "MISSING_API_KEY"
        session.post.assert_not_called()

    def test_rejected_send(self):
        sender = ResendEmailSender("re_key", "from@example.com", session=_session(422, {"message": "invalid"}))

        result = sender.send("a@example.com", "Hello", "<p>Hi</p>")

        assert not result.success
        assert result.error == "UPSTREAM_HTTP_ERROR"

    def test_accepted_without_id_is_not_success(self):
        sender = ResendEmailSender("re_key", "from@example.com", session=_session(200, {}))

        assert sender.send("a@example.com", "Hello", "<p>Hi</p>").error == "INVALID_RESPONSE"

    def test_network_error(self):
        session = MagicMock()
        session.post.side_effect = requests.Timeout("timed out")
        sender = ResendEmailSender("re_key", "from@example.com", session=session)

        result = sender.send("a@example.com", "Hello", "<p>Hi</p>")

        assert not result.success
        assert result.error == "NETWORK_ERROR"
