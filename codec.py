"""Translate between raw admission review bodies and the objects the mutator
works with.

The mutation logic only ever sees a `Pod` and produces an `AdmissionResponse`;
everything that depends on the shape of the AdmissionReview envelope lives
here, behind the `ReviewCodec` protocol.
"""

import logging
from typing import NamedTuple

import pydantic
from typing_extensions import Protocol, override

from exc import DecodeError, InvalidPodPayload
from models import AdmissionResponse, AdmissionReview, ApiVersion, Pod

LOG = logging.getLogger(__name__)


class DecodedRequest(NamedTuple):
    pod: Pod
    uid: str
    api_version: ApiVersion


class ReviewCodec(Protocol):
    def decode(self, body: bytes) -> DecodedRequest: ...

    def encode(
        self,
        response: AdmissionResponse,
        uid: str | None = None,
        api_version: ApiVersion = ApiVersion.V1,
    ) -> bytes: ...


def is_pod_kind(request) -> bool:
    # Older clients may leave kind unset; trust the webhook rules in that case.
    if request.kind is None:
        return True

    return request.kind.group == "" and request.kind.kind == "Pod"


class AdmissionReviewCodec(ReviewCodec):
    @override
    def decode(self, body):
        try:
            review = AdmissionReview.model_validate_json(body)
        except pydantic.ValidationError as err:
            LOG.error("can't decode body: %s", err)
            raise DecodeError(f"can't decode admission review: {err}")

        if review.request is None:
            LOG.error("admission review contains no request")
            raise DecodeError("admission review contains no request")

        req = review.request
        if not is_pod_kind(req):
            raise InvalidPodPayload(
                f"unsupported resource kind {req.kind.kind}",
                uid=req.uid,
                api_version=review.apiVersion,
            )

        if req.object is None:
            raise InvalidPodPayload(
                "admission request contains no object",
                uid=req.uid,
                api_version=review.apiVersion,
            )

        try:
            pod = Pod.model_validate(req.object)
        except pydantic.ValidationError as err:
            LOG.error("could not unmarshal raw object: %s", err)
            raise InvalidPodPayload(
                f"invalid pod object: {err}",
                uid=req.uid,
                api_version=review.apiVersion,
            )

        return DecodedRequest(pod=pod, uid=req.uid, api_version=review.apiVersion)

    @override
    def encode(self, response, uid=None, api_version=ApiVersion.V1):
        if uid is not None:
            response = response.model_copy(update={"uid": uid})

        review = AdmissionReview(apiVersion=api_version, response=response)
        return review.model_dump_json(exclude_none=True).encode()
