"""Decide whether a Pod needs the failover tolerations and build the patch.

A Pod is left alone when it already tolerates both the not-ready and the
unreachable taints. Otherwise the missing default tolerations are added with a
single patch operation covering the whole tolerations list, so the patch never
depends on the index of an existing entry:

- no tolerations field at all: `add` both defaults.
- some tolerations: `replace` with the existing entries, in order, followed
  by whichever defaults are missing.

An existing toleration counts as present when its key matches, whatever its
operator, effect or tolerationSeconds.
"""

import base64
import logging

from pydantic import BaseModel, ConfigDict, NonNegativeInt

from exc import PatchEncodeError
from models import (
    AdmissionResponse,
    Patch,
    PatchAction,
    PatchOp,
    PatchType,
    Pod,
    Toleration,
)

LOG = logging.getLogger(__name__)

NOT_READY_KEY = "node.kubernetes.io/not-ready"
UNREACHABLE_KEY = "node.kubernetes.io/unreachable"

TOLERATIONS_PATH = "/spec/tolerations"
OPERATOR_EXISTS = "Exists"
EFFECT_NO_EXECUTE = "NoExecute"

# Same as the API server's DefaultTolerationSeconds admission plugin.
DEFAULT_TOLERATION_SECONDS = 300


class TolerationSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    not_ready_seconds: NonNegativeInt = DEFAULT_TOLERATION_SECONDS
    unreachable_seconds: NonNegativeInt = DEFAULT_TOLERATION_SECONDS
    pod_selector: dict[str, str] = {}


def has_toleration(tolerations: list[Toleration] | None, key: str) -> bool:
    return any(toleration.key == key for toleration in tolerations or [])


def default_toleration(key: str, seconds: int) -> Toleration:
    return Toleration(
        key=key,
        operator=OPERATOR_EXISTS,
        effect=EFFECT_NO_EXECUTE,
        tolerationSeconds=seconds,
    )


def default_tolerations(settings: TolerationSettings) -> list[Toleration]:
    return [
        default_toleration(NOT_READY_KEY, settings.not_ready_seconds),
        default_toleration(UNREACHABLE_KEY, settings.unreachable_seconds),
    ]


def dump_tolerations(tolerations: list[Toleration]) -> list[dict]:
    return [toleration.model_dump(exclude_none=True) for toleration in tolerations]


def mutation_required(tolerations: list[Toleration] | None) -> bool:
    return not (
        has_toleration(tolerations, NOT_READY_KEY)
        and has_toleration(tolerations, UNREACHABLE_KEY)
    )


def merge_tolerations(
    tolerations: list[Toleration], settings: TolerationSettings
) -> list[Toleration]:
    """Return a new list with the missing defaults appended.

    The input list is not modified.
    """
    merged = list(tolerations)
    for default in default_tolerations(settings):
        if not has_toleration(merged, default.key):
            merged.append(default)

    return merged


def build_patch(pod: Pod, settings: TolerationSettings) -> Patch | None:
    tolerations = pod.spec.tolerations

    if not mutation_required(tolerations):
        return None

    if tolerations is None:
        action = PatchAction(
            op=PatchOp.ADD,
            path=TOLERATIONS_PATH,
            value=dump_tolerations(default_tolerations(settings)),
        )
    else:
        action = PatchAction(
            op=PatchOp.REPLACE,
            path=TOLERATIONS_PATH,
            value=dump_tolerations(merge_tolerations(tolerations, settings)),
        )

    return Patch([action])


def encode_patch(patch: Patch) -> str:
    try:
        data = patch.model_dump_json(exclude_none=True)
    except (ValueError, TypeError) as err:
        LOG.error("could not make patch data: %s", err)
        raise PatchEncodeError(f"could not encode patch: {err}")

    return base64.b64encode(data.encode()).decode()


def selector_matches(pod: Pod, selector: dict[str, str]) -> bool:
    labels = pod.metadata.labels
    return all(labels.get(key) == value for key, value in selector.items())


class TolerationMutator:
    def __init__(self, settings: TolerationSettings):
        self.settings = settings

    def mutate(self, pod: Pod) -> AdmissionResponse:
        if not selector_matches(pod, self.settings.pod_selector):
            LOG.debug("pod does not match selector %s", self.settings.pod_selector)
            return AdmissionResponse(allowed=True)

        patch = build_patch(pod, self.settings)
        if patch is None:
            LOG.debug("pod already has failover tolerations")
            return AdmissionResponse(allowed=True)

        data = encode_patch(patch)
        return AdmissionResponse(
            allowed=True,
            patchType=PatchType.JSONPatch,
            patch=data,
        )
