#!/usr/bin/env python3
"""
onelogin-aws: CLI tool to obtain temporary AWS credentials via OneLogin SAML.

Exchanges the OneLogin API client credentials for an access token, asks
OneLogin for a SAML assertion for the configured AWS app (completing the MFA
challenge with a one-time code), trades the assertion for temporary
credentials with STS AssumeRoleWithSAML, and writes them to
~/.aws/credentials or prints them as shell exports.
"""

import argparse
import configparser
import enum
import getpass
import logging
import os
import sys
from dataclasses import dataclass, field

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_CONFIG_PATH = os.path.expanduser("~/.onelogin-aws")
AWS_CREDENTIALS_PATH = os.path.expanduser("~/.aws/credentials")
AWS_CONFIG_PATH = os.path.expanduser("~/.aws/config")
DEFAULT_PROFILE = "onelogin"
DEFAULT_AWS_REGION = "us-east-1"
DEFAULT_PROVIDER = "onelogin"
DEFAULT_ONELOGIN_REGION = "us"
MAX_SESSION_DURATION = 43200  # STS max is 12 h

ONELOGIN_API_URL = "https://api.{region}.onelogin.com"
GENERATE_TOKENS_PATH = "/auth/oauth2/token"
GENERATE_SAML_ASSERTION_PATH = "/api/1/saml_assertion"
VERIFY_FACTOR_PATH = "/api/1/saml_assertion/verify_factor"
HTTP_TIMEOUT = 30

logger = logging.getLogger("onelogin_aws")


def setup_logging(debug=False):
    """Send log records to stderr; DEBUG when *debug* is set, INFO otherwise."""
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    logger.handlers[:] = [handler]
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.propagate = False


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class HandshakeError(Exception):
    """Base class for every failure of a handshake run.

    ``stage`` names the step that failed so the caller can tell the operator
    where to look without parsing the message.
    """

    stage = "handshake"

    def __init__(self, message, stage=None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class ConfigurationError(HandshakeError):
    stage = "config"


class AuthServiceError(HandshakeError):
    """OneLogin rejected a request or could not be reached."""

    stage = "onelogin"

    def __init__(self, message, stage=None, status_code=None):
        super().__init__(message, stage)
        self.status_code = status_code


class RoleAssumptionError(HandshakeError):
    stage = "assume-role"


class InputError(HandshakeError):
    stage = "input"


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderCredentials:
    client_id: str
    client_secret: str
    subdomain: str
    username: str = None
    region: str = DEFAULT_ONELOGIN_REGION


@dataclass(frozen=True)
class ApplicationBinding:
    application_id: str
    principal_arn: str
    role_arn: str
    provider: str = DEFAULT_PROVIDER


@dataclass(frozen=True)
class MfaDevice:
    device_id: str
    device_type: str


@dataclass(frozen=True)
class Completed:
    """OneLogin returned the assertion without asking for a second factor."""

    saml_assertion: str


@dataclass(frozen=True)
class ChallengeIssued:
    state_token: str
    devices: tuple


@dataclass
class AssertionState:
    state_token: str = None
    devices: tuple = ()
    saml_assertion: str = None

    @property
    def finalized(self):
        return self.saml_assertion is not None


@dataclass(frozen=True)
class TemporaryCredentials:
    access_key_id: str
    secret_access_key: str
    session_token: str
    expiration: object = field(default=None)


class HandshakeState(enum.Enum):
    START = "start"
    TOKEN_ACQUIRED = "token-acquired"
    ASSERTION_REQUESTED = "assertion-requested"
    ASSERTION_FINALIZED = "assertion-finalized"
    ROLE_ASSUMED = "role-assumed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Configuration helpers
# ---------------------------------------------------------------------------


def load_config(config_path):
    """Load configuration from an INI file."""
    config = configparser.ConfigParser()
    if os.path.exists(config_path):
        config.read(config_path)
    return config


def _config_value(config, section, key):
    if config.has_section(section) and config.has_option(section, key):
        return config.get(section, key).strip() or None
    return None


def get_provider(config, name=DEFAULT_PROVIDER, environ=None):
    """Return the ProviderCredentials for provider *name*.

    Values come from the ``[providers.<name>]`` section and can be overridden
    with ``<NAME>_CLIENT_ID``, ``<NAME>_CLIENT_SECRET``, ``<NAME>_SUBDOMAIN``
    and ``<NAME>_USERNAME`` environment variables.
    """
    environ = os.environ if environ is None else environ
    section = f"providers.{name}"
    env_prefix = name.upper().replace("-", "_")

    def value(key):
        return environ.get(f"{env_prefix}_{key.upper()}") or _config_value(config, section, key)

    provider_type = _config_value(config, section, "type") or DEFAULT_PROVIDER
    if provider_type != DEFAULT_PROVIDER:
        raise ConfigurationError(
            f"Provider '{name}' has unsupported type '{provider_type}'; only onelogin is supported"
        )

    required = {}
    for key in ("client_id", "client_secret", "subdomain"):
        required[key] = value(key)
        if not required[key]:
            raise ConfigurationError(
                f"{section}.{key} config value or {env_prefix}_{key.upper()} "
                f"environment variable must be set"
            )

    return ProviderCredentials(
        client_id=required["client_id"],
        client_secret=required["client_secret"],
        subdomain=required["subdomain"],
        username=value("username"),
        region=_config_value(config, section, "region") or DEFAULT_ONELOGIN_REGION,
    )


def get_app(config, name):
    """Return the ApplicationBinding configured in the ``[apps.<name>]`` section."""
    section = f"apps.{name}"
    if not config.has_section(section):
        raise ConfigurationError(f"Can't find app '{name}' in config file (no [{section}] section)")

    values = {}
    for key in ("app_id", "principal_arn", "role_arn"):
        values[key] = _config_value(config, section, key)
        if not values[key]:
            raise ConfigurationError(f"Can't find {key} for {name} in config file")

    return ApplicationBinding(
        application_id=values["app_id"],
        principal_arn=values["principal_arn"],
        role_arn=values["role_arn"],
        provider=_config_value(config, section, "provider") or DEFAULT_PROVIDER,
    )


def _parse_duration(raw):
    if raw is None:
        return None
    try:
        duration = int(raw)
    except ValueError:
        raise ConfigurationError(f"duration must be a number of seconds, got {raw!r}") from None
    if duration <= 0:
        raise ConfigurationError(f"duration must be positive, got {duration}")
    return duration


# ---------------------------------------------------------------------------
# Operator interaction
# ---------------------------------------------------------------------------


class TerminalPrompter:
    """Reads operator input from the terminal."""

    def get_line(self, prompt):
        return input(prompt).strip()

    def get_secret(self, prompt):
        return getpass.getpass(prompt)

    def choose(self, title, labels):
        """Print *labels* as a 1-based menu and return the chosen 0-based index.

        Raises InputError when the answer is not a number in [1, len(labels)].
        """
        print(f"\n{title}")
        for i, label in enumerate(labels):
            print(f"  [{i + 1}] {label}")
        answer = self.get_line(f"\nSelect (1-{len(labels)}): ")
        return parse_selection(answer, len(labels))


def parse_selection(answer, count):
    """Validate a 1-based menu answer and return the 0-based index."""
    try:
        choice = int(answer)
    except (TypeError, ValueError):
        raise InputError(f"'{answer}' is not a number between 1 and {count}") from None
    if not 1 <= choice <= count:
        raise InputError(f"Selection {choice} is out of range (1-{count})")
    return choice - 1


# ---------------------------------------------------------------------------
# OneLogin API
# ---------------------------------------------------------------------------


class OneLoginClient:
    """Thin client for the three OneLogin API endpoints the handshake uses.

    Every method performs exactly one POST. Errors are raised as
    AuthServiceError and nothing is retried: the access token, state token
    and OTP are all short-lived and single-use.
    """

    def __init__(self, region=DEFAULT_ONELOGIN_REGION, session=None, timeout=HTTP_TIMEOUT):
        self.base_url = ONELOGIN_API_URL.format(region=region)
        self.session = session or requests.Session()
        self.timeout = timeout

    def _post(self, path, payload, authorization, stage):
        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": authorization,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        logger.debug("POST %s", url)
        try:
            response = self.session.post(url, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            raise AuthServiceError(f"Could not reach OneLogin: {exc}", stage=stage) from exc

        try:
            body = response.json()
        except ValueError:
            body = None
        status = body.get("status") if isinstance(body, dict) else None
        status = status if isinstance(status, dict) else {}
        logger.debug("HTTP %s from %s", response.status_code, path)

        if not response.ok or status.get("error"):
            message = status.get("message") or f"HTTP {response.status_code}"
            raise AuthServiceError(message, stage=stage, status_code=response.status_code)
        if not isinstance(body, dict):
            raise AuthServiceError(
                f"Unexpected response from OneLogin (HTTP {response.status_code})",
                stage=stage,
                status_code=response.status_code,
            )
        return body

    def generate_tokens(self, client_id, client_secret):
        """Exchange the API client credentials for an access token."""
        body = self._post(
            GENERATE_TOKENS_PATH,
            {"grant_type": "client_credentials"},
            f"client_id:{client_id}, client_secret:{client_secret}",
            stage="token",
        )
        try:
            return body["data"][0]["access_token"]
        except (KeyError, IndexError, TypeError):
            raise AuthServiceError("OneLogin token response has no access_token", stage="token") from None

    def generate_saml_assertion(self, token, username, password, app_id, subdomain):
        """Request a SAML assertion for *app_id*.

        Returns Completed when OneLogin hands back the assertion directly, or
        ChallengeIssued with the state token and the user's MFA devices.
        """
        payload = {
            "username_or_email": username,
            "password": password,
            "app_id": app_id,
            "subdomain": subdomain,
        }
        try:
            body = self._post(GENERATE_SAML_ASSERTION_PATH, payload, f"bearer:{token}", stage="assertion")
        except AuthServiceError as exc:
            if exc.status_code == 400:
                # OneLogin answers a subdomain/username mismatch with a bare 400.
                raise AuthServiceError(
                    f"{exc} (check that subdomain '{subdomain}' matches the account of '{username}')",
                    stage=exc.stage,
                    status_code=exc.status_code,
                ) from exc
            raise

        data = body.get("data")
        if isinstance(data, str) and data:
            return Completed(saml_assertion=data)

        try:
            challenge = data[0]
            state_token = challenge["state_token"]
            devices = tuple(
                MfaDevice(device_id=str(d["device_id"]), device_type=d.get("device_type", "unknown"))
                for d in challenge.get("devices") or ()
            )
        except (AttributeError, KeyError, IndexError, TypeError):
            raise AuthServiceError("Unexpected SAML assertion response from OneLogin", stage="assertion") from None

        if not devices:
            raise AuthServiceError(
                "OneLogin requires MFA but returned no registered devices", stage="assertion"
            )
        return ChallengeIssued(state_token=state_token, devices=devices)

    def verify_factor(self, token, app_id, device_id, state_token, otp):
        """Submit the OTP for *device_id* and return the finalized SAML assertion."""
        payload = {
            "app_id": app_id,
            "device_id": device_id,
            "state_token": state_token,
            "otp_token": otp,
        }
        body = self._post(VERIFY_FACTOR_PATH, payload, f"bearer:{token}", stage="mfa")
        data = body.get("data")
        if not isinstance(data, str) or not data:
            raise AuthServiceError("OneLogin did not return a SAML assertion after MFA", stage="mfa")
        return data


# ---------------------------------------------------------------------------
# MFA
# ---------------------------------------------------------------------------


def select_device(devices, prompter):
    """Return the device_id to authenticate with, prompting only when ambiguous."""
    if len(devices) == 1:
        return devices[0].device_id

    labels = [f"{d.device_id} - {d.device_type}" for d in devices]
    index = prompter.choose("Available MFA devices:", labels)
    return devices[index].device_id


# ---------------------------------------------------------------------------
# AWS credentials
# ---------------------------------------------------------------------------


class RoleAssumer:
    """Trades a SAML assertion for temporary credentials via STS."""

    def __init__(self, region=None, client=None, duration=None):
        self.client = client or boto3.client("sts", region_name=region)
        self.duration = duration

    def assume_role(self, saml_assertion, principal_arn, role_arn):
        params = {
            "PrincipalArn": principal_arn,
            "RoleArn": role_arn,
            "SAMLAssertion": saml_assertion,
        }
        if self.duration:
            params["DurationSeconds"] = min(self.duration, MAX_SESSION_DURATION)

        try:
            response = self.client.assume_role_with_saml(**params)
        except ClientError as exc:
            raise RoleAssumptionError(exc.response.get("Error", {}).get("Message") or str(exc)) from exc
        except BotoCoreError as exc:
            raise RoleAssumptionError(str(exc)) from exc

        creds = response["Credentials"]
        return TemporaryCredentials(
            access_key_id=creds["AccessKeyId"],
            secret_access_key=creds["SecretAccessKey"],
            session_token=creds["SessionToken"],
            expiration=creds["Expiration"],
        )


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------


class Handshake:
    """Runs one OneLogin -> STS authentication from start to finish.

    The steps are strictly sequential and each is attempted once; the first
    error aborts the run and is raised to the caller unchanged. A Handshake
    instance is good for a single run.
    """

    def __init__(self, onelogin, role_assumer, prompter):
        self.onelogin = onelogin
        self.role_assumer = role_assumer
        self.prompter = prompter
        self.state = HandshakeState.START
        self.assertion = AssertionState()

    def _transition(self, state):
        logger.debug("Handshake %s -> %s", self.state.value, state.value)
        self.state = state

    def run(self, provider, app):
        if self.state is not HandshakeState.START:
            raise RuntimeError("Handshake already ran; create a new one")
        try:
            return self._run(provider, app)
        except (HandshakeError, EOFError, KeyboardInterrupt):
            self._transition(HandshakeState.FAILED)
            raise

    def _run(self, provider, app):
        logger.info("Generating OneLogin access token")
        token = self.onelogin.generate_tokens(provider.client_id, provider.client_secret)
        self._transition(HandshakeState.TOKEN_ACQUIRED)

        username = provider.username or self.prompter.get_line("OneLogin username: ")
        password = self.prompter.get_secret("OneLogin password: ")

        logger.info("Generating SAML assertion for app %s", app.application_id)
        outcome = self.onelogin.generate_saml_assertion(
            token, username, password, app.application_id, provider.subdomain
        )
        self._transition(HandshakeState.ASSERTION_REQUESTED)

        if isinstance(outcome, ChallengeIssued):
            self.assertion.state_token = outcome.state_token
            self.assertion.devices = outcome.devices
            self.assertion.saml_assertion = self._resolve_mfa(token, app)
        else:
            logger.info("OneLogin did not require MFA")
            self.assertion.saml_assertion = outcome.saml_assertion
        self._transition(HandshakeState.ASSERTION_FINALIZED)

        logger.info("Assuming role %s", app.role_arn)
        credentials = self.role_assumer.assume_role(
            self.assertion.saml_assertion, app.principal_arn, app.role_arn
        )
        self._transition(HandshakeState.ROLE_ASSUMED)
        return credentials

    def _resolve_mfa(self, token, app):
        while True:
            try:
                device_id = select_device(self.assertion.devices, self.prompter)
                break
            except InputError as exc:
                print(f"Invalid selection, please try again. ({exc})")

        otp = self.prompter.get_line("Please enter the OTP from your MFA device: ")
        logger.info("Verifying MFA factor on device %s", device_id)
        return self.onelogin.verify_factor(
            token, app.application_id, device_id, self.assertion.state_token, otp
        )


# ---------------------------------------------------------------------------
# Credential output
# ---------------------------------------------------------------------------


def write_aws_credentials(credentials, profile, region,
                          credentials_path=AWS_CREDENTIALS_PATH, config_path=AWS_CONFIG_PATH):
    """Write temporary credentials to ~/.aws/credentials (and region to ~/.aws/config).

    Both files are left with mode 0o600.
    """
    os.makedirs(os.path.dirname(credentials_path), exist_ok=True)

    creds_config = configparser.ConfigParser()
    if os.path.exists(credentials_path):
        creds_config.read(credentials_path)

    if not creds_config.has_section(profile):
        creds_config.add_section(profile)

    creds_config.set(profile, "aws_access_key_id", credentials.access_key_id)
    creds_config.set(profile, "aws_secret_access_key", credentials.secret_access_key)
    creds_config.set(profile, "aws_session_token", credentials.session_token)
    creds_config.set(profile, "region", region)

    with open(credentials_path, "w") as fh:
        creds_config.write(fh)
    os.chmod(credentials_path, 0o600)

    aws_cfg = configparser.ConfigParser()
    if os.path.exists(config_path):
        aws_cfg.read(config_path)

    cfg_section = "default" if profile == "default" else f"profile {profile}"
    if not aws_cfg.has_section(cfg_section):
        aws_cfg.add_section(cfg_section)
    aws_cfg.set(cfg_section, "region", region)
    aws_cfg.set(cfg_section, "output", "json")

    with open(config_path, "w") as fh:
        aws_cfg.write(fh)
    os.chmod(config_path, 0o600)


def format_exports(credentials):
    """Return shell export statements for *credentials*."""
    return "\n".join([
        f"export AWS_ACCESS_KEY_ID={credentials.access_key_id}",
        f"export AWS_SECRET_ACCESS_KEY={credentials.secret_access_key}",
        f"export AWS_SESSION_TOKEN={credentials.session_token}",
    ])


def _format_expiration(expiration):
    if hasattr(expiration, "strftime"):
        return expiration.strftime("%Y-%m-%d %H:%M:%S %Z").strip()
    return str(expiration)


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def _build_parser():
    parser = argparse.ArgumentParser(
        description="Obtain temporary AWS credentials via OneLogin SAML with MFA.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  onelogin-aws prod                     Use [apps.prod] from ~/.onelogin-aws
  onelogin-aws prod --profile prod      Store credentials in 'prod' profile
  onelogin-aws prod --export            Print export statements instead
""",
    )
    parser.add_argument("app", help="Name of an [apps.<name>] section in the config file")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH,
                        help="Path to config file (default: ~/.onelogin-aws)")
    parser.add_argument("--provider",
                        help="Provider section to use (default: the app's 'provider' or onelogin)")
    parser.add_argument("--profile",
                        help=f"AWS credentials profile name (default: {DEFAULT_PROFILE})")
    parser.add_argument("--region",
                        help=f"AWS region for STS and the profile (default: {DEFAULT_AWS_REGION})")
    parser.add_argument("--duration", type=int,
                        help="Session duration in seconds (default: STS default)")
    parser.add_argument("--export", action="store_true",
                        help="Print shell export statements instead of writing ~/.aws/credentials")
    parser.add_argument("--debug", action="store_true",
                        help="Log request URLs and handshake state transitions")
    return parser


def main(argv=None, handshake_factory=None):
    args = _build_parser().parse_args(argv)
    setup_logging(args.debug)

    cfg = load_config(args.config)
    sec = "default"

    def cf(key, arg_val, fallback=None):
        """Return arg_val if set, else config value, else fallback."""
        if arg_val is not None:
            return arg_val
        return _config_value(cfg, sec, key) or fallback

    try:
        app = get_app(cfg, args.app)
        provider = get_provider(cfg, args.provider or app.provider)
        profile = cf("profile", args.profile, DEFAULT_PROFILE)
        region = cf("region", args.region, DEFAULT_AWS_REGION)
        duration = _parse_duration(
            str(args.duration) if args.duration is not None
            else _config_value(cfg, f"apps.{args.app}", "duration") or _config_value(cfg, sec, "duration")
        )
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}")
        sys.exit(1)

    if handshake_factory is None:
        handshake = Handshake(
            OneLoginClient(region=provider.region),
            RoleAssumer(region=region, duration=duration),
            TerminalPrompter(),
        )
    else:
        handshake = handshake_factory(provider, region, duration)

    try:
        credentials = handshake.run(provider, app)
    except HandshakeError as exc:
        print(f"{exc.stage} failed: {exc}")
        sys.exit(1)
    except (EOFError, KeyboardInterrupt):
        print("\nAborted.")
        sys.exit(1)

    if args.export:
        print(format_exports(credentials))
        return

    write_aws_credentials(credentials, profile, region)
    print(f"\nCredentials written to profile '{profile}' ({AWS_CREDENTIALS_PATH})")
    print(f"Expires: {_format_expiration(credentials.expiration)}")


if __name__ == "__main__":
    main()
