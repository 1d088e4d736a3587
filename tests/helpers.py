"""Shared fakes for the OneLogin API, the STS client and the terminal."""

from unittest.mock import MagicMock

from onelogin_aws import TerminalPrompter


def make_response(status_code, body):
    response = MagicMock()
    response.status_code = status_code
    response.ok = status_code < 400
    if body is None:
        response.json.side_effect = ValueError("No JSON object could be decoded")
    else:
        response.json.return_value = body
    return response


def ok_status(message="Success"):
    return {"error": False, "code": 200, "type": "success", "message": message}


def token_body(access_token):
    return {
        "status": ok_status(),
        "data": [{
            "access_token": access_token,
            "token_type": "bearer",
            "expires_in": 36000,
            "account_id": 12345,
        }],
    }


def challenge_body(state_token, devices):
    return {
        "status": ok_status("MFA is required for this user"),
        "data": [{
            "state_token": state_token,
            "devices": [{"device_id": d, "device_type": t} for d, t in devices],
            "callback_url": "https://api.us.onelogin.com/api/1/saml_assertion/verify_factor",
            "user": {"username": "jdoe", "id": 88},
        }],
    }


def assertion_body(saml):
    return {"status": ok_status(), "data": saml}


def error_body(code, message):
    return {"status": {"error": True, "code": code, "type": "bad request", "message": message}}


class FakeSession:
    """Stands in for requests.Session, answering POSTs from per-path queues."""

    def __init__(self, routes):
        self.routes = {path: list(responses) for path, responses in routes.items()}
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        path = url.split(".onelogin.com", 1)[1]
        self.calls.append({"url": url, "path": path, "json": json, "headers": headers, "timeout": timeout})
        queue = self.routes.get(path)
        if not queue:
            raise AssertionError(f"unexpected POST to {path}")
        response = queue.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def paths(self):
        return [call["path"] for call in self.calls]


class ScriptedPrompter(TerminalPrompter):
    """Answers prompts from a script instead of the terminal."""

    def __init__(self, lines=(), secrets=()):
        self.lines = list(lines)
        self.secrets = list(secrets)
        self.prompts = []

    def get_line(self, prompt):
        self.prompts.append(prompt)
        if not self.lines:
            raise AssertionError(f"unexpected prompt: {prompt!r}")
        return self.lines.pop(0)

    def get_secret(self, prompt):
        self.prompts.append(prompt)
        if not self.secrets:
            raise AssertionError(f"unexpected secret prompt: {prompt!r}")
        return self.secrets.pop(0)


def sts_client(access_key="AK", secret="SK", token="ST", expiration=None):
    client = MagicMock()
    client.assume_role_with_saml.return_value = {
        "Credentials": {
            "AccessKeyId": access_key,
            "SecretAccessKey": secret,
            "SessionToken": token,
            "Expiration": expiration,
        },
    }
    return client
