import base64
import logging
import sys

import pydantic

from flask import Flask, Response, request, current_app

from codec import AdmissionReviewCodec
from exc import (
    ApplicationError,
    ConfigurationError,
    DecodeError,
    EmptyBody,
    InvalidPodPayload,
    PatchEncodeError,
    ResponseWriteError,
    UnsupportedMediaType,
)
from models import AdmissionResponse, AdmissionReviewStatus, ApiVersion
from tolerations import (
    DEFAULT_TOLERATION_SECONDS,
    TolerationMutator,
    TolerationSettings,
)

LOG = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)


class DEFAULTS:
    NOT_READY_TOLERATION_SECONDS = DEFAULT_TOLERATION_SECONDS
    UNREACHABLE_TOLERATION_SECONDS = DEFAULT_TOLERATION_SECONDS
    POD_SELECTOR = ""
    CODEC = AdmissionReviewCodec


def parse_selector(val: str | dict | None) -> dict[str, str]:
    """Parse a `key=value[,key=value...]` label selector."""

    if not val:
        return {}
    if isinstance(val, dict):
        return val

    selector = {}
    for term in val.split(","):
        key, sep, value = term.strip().partition("=")
        if not sep or not key:
            raise ConfigurationError(f"invalid pod selector term: {term!r}")
        selector[key] = value

    return selector


def settings_from_config(config) -> TolerationSettings:
    try:
        return TolerationSettings(
            not_ready_seconds=config["NOT_READY_TOLERATION_SECONDS"],
            unreachable_seconds=config["UNREACHABLE_TOLERATION_SECONDS"],
            pod_selector=parse_selector(config["POD_SELECTOR"]),
        )
    except pydantic.ValidationError as err:
        raise ConfigurationError(f"invalid toleration settings: {err}")


def review_response(response, uid=None, api_version=ApiVersion.V1, status=200):
    try:
        body = current_app.codec.encode(response, uid=uid, api_version=api_version)
    except (ValueError, TypeError) as err:
        LOG.error("couldn't encode response: %s", err)
        raise ResponseWriteError(f"couldn't encode response: {err}")

    return Response(body, status=status, mimetype="application/json")


def error_response(message):
    return AdmissionResponse(status=AdmissionReviewStatus(message=message))


def mutate_pod():
    body = request.get_data()
    if not body:
        LOG.error("empty body")
        raise EmptyBody("empty body")

    if request.mimetype != "application/json":
        LOG.error("Content-Type=%s, expect application/json", request.content_type)
        raise UnsupportedMediaType("invalid Content-Type, expect `application/json`")

    decoded = current_app.codec.decode(body)

    try:
        response = current_app.mutator.mutate(decoded.pod)
    except PatchEncodeError as err:
        response = error_response(str(err))

    if response.patch:
        LOG.info(
            "patching tolerations for request %s: %s",
            decoded.uid,
            base64.b64decode(response.patch).decode(),
        )
    else:
        LOG.debug("no patch for request %s", decoded.uid)

    return review_response(
        response, uid=decoded.uid, api_version=decoded.api_version
    )


def handle_decodeerror(err):
    return review_response(error_response(str(err)), status=err.status_code)


def handle_invalidpodpayload(err):
    return review_response(
        error_response(str(err)),
        uid=err.uid,
        api_version=err.api_version or ApiVersion.V1,
    )


def handle_applicationerror(err):
    return str(err), err.status_code, {"content-type": "text/plain"}


def health():
    return "OK", 200, {"content-type": "text/plain"}


def create_app(**config) -> Flask:
    """Use an application factory [1] to create the Flask app.

    Settings come from the DEFAULTS class, then from KUBE_FAILOVER_*
    environment variables, then from keyword arguments. The toleration
    settings are validated once here and are read-only afterwards.

    [1]: https://flask.palletsprojects.com/en/3.0.x/patterns/appfactories/
    """

    app = Flask(__name__)
    app.config.from_object(DEFAULTS)
    app.config.from_prefixed_env("KUBE_FAILOVER")
    if config:
        app.config.update(config)

    try:
        settings = settings_from_config(app.config)
    except ConfigurationError as err:
        LOG.error("%s", err)
        sys.exit(1)

    LOG.info(
        "toleration seconds: not-ready=%d unreachable=%d, pod selector: %s",
        settings.not_ready_seconds,
        settings.unreachable_seconds,
        settings.pod_selector or "<all pods>",
    )

    app.codec = app.config["CODEC"]()
    app.mutator = TolerationMutator(settings)

    app.errorhandler(DecodeError)(handle_decodeerror)
    app.errorhandler(InvalidPodPayload)(handle_invalidpodpayload)
    app.errorhandler(ApplicationError)(handle_applicationerror)
    app.add_url_rule("/healthz", view_func=health)
    app.add_url_rule("/mutate", view_func=mutate_pod, methods=["POST"])

    return app
