import base64
import json

import pytest

import tolerations
from exc import PatchEncodeError
from models import Metadata, Pod, PodSpec, Toleration
from tolerations import (
    NOT_READY_KEY,
    UNREACHABLE_KEY,
    TolerationMutator,
    TolerationSettings,
    build_patch,
    default_toleration,
    has_toleration,
    merge_tolerations,
    mutation_required,
    selector_matches,
)


MASTER = Toleration(key="node-role.kubernetes.io/master", effect="NoSchedule")
CUSTOM_NOT_READY = Toleration(
    key=NOT_READY_KEY, operator="Equal", effect="NoSchedule", tolerationSeconds=5
)
CUSTOM_UNREACHABLE = Toleration(key=UNREACHABLE_KEY, operator="Exists")


def pod_with(tols):
    return Pod(metadata=Metadata(name="testpod"), spec=PodSpec(tolerations=tols))


def apply_patch(pod, patch):
    """Apply our single whole-list patch operation to a Pod."""
    (action,) = patch.root
    assert action.path == "/spec/tolerations"
    return pod_with([Toleration(**tol) for tol in action.value])


def test_has_toleration():
    assert has_toleration([MASTER, CUSTOM_NOT_READY], NOT_READY_KEY)
    assert not has_toleration([MASTER], NOT_READY_KEY)
    assert not has_toleration([], NOT_READY_KEY)
    assert not has_toleration(None, NOT_READY_KEY)


def test_default_toleration():
    tol = default_toleration(UNREACHABLE_KEY, 42)
    assert tol.model_dump(exclude_none=True) == {
        "key": UNREACHABLE_KEY,
        "operator": "Exists",
        "effect": "NoExecute",
        "tolerationSeconds": 42,
    }


@pytest.mark.parametrize(
    "tols,expected",
    [
        (None, True),
        ([], True),
        ([MASTER], True),
        ([CUSTOM_NOT_READY], True),
        ([CUSTOM_UNREACHABLE], True),
        ([CUSTOM_NOT_READY, CUSTOM_UNREACHABLE], False),
        ([CUSTOM_UNREACHABLE, MASTER, CUSTOM_NOT_READY], False),
    ],
)
def test_mutation_required(tols, expected):
    assert mutation_required(tols) is expected


def test_merge_keeps_input_unmodified(settings):
    tols = [MASTER]
    merged = merge_tolerations(tols, settings)
    assert tols == [MASTER]
    assert [tol.key for tol in merged] == [MASTER.key, NOT_READY_KEY, UNREACHABLE_KEY]


def test_add_when_no_tolerations(settings):
    """A pod without a tolerations field gets a single add with both defaults"""
    patch = build_patch(pod_with(None), settings)
    assert patch.model_dump() == [
        {
            "op": "add",
            "path": "/spec/tolerations",
            "value": [
                {
                    "key": NOT_READY_KEY,
                    "operator": "Exists",
                    "effect": "NoExecute",
                    "tolerationSeconds": 100,
                },
                {
                    "key": UNREACHABLE_KEY,
                    "operator": "Exists",
                    "effect": "NoExecute",
                    "tolerationSeconds": 200,
                },
            ],
        }
    ]


def test_replace_when_empty_list(settings):
    patch = build_patch(pod_with([]), settings)
    (action,) = patch.root
    assert action.op == "replace"
    assert [tol["key"] for tol in action.value] == [NOT_READY_KEY, UNREACHABLE_KEY]


def test_no_patch_when_both_present(settings):
    """Existing entries count as present however they are configured"""
    pod = pod_with([CUSTOM_NOT_READY, CUSTOM_UNREACHABLE])
    assert build_patch(pod, settings) is None


@pytest.mark.parametrize(
    "existing,missing",
    [
        ([MASTER, CUSTOM_NOT_READY], UNREACHABLE_KEY),
        ([CUSTOM_UNREACHABLE, MASTER], NOT_READY_KEY),
    ],
)
def test_replace_appends_one_missing(settings, existing, missing):
    patch = build_patch(pod_with(existing), settings)
    (action,) = patch.root
    assert action.op == "replace"
    assert action.value[:-1] == [tol.model_dump(exclude_none=True) for tol in existing]
    assert action.value[-1]["key"] == missing
    assert action.value[-1]["operator"] == "Exists"
    assert action.value[-1]["effect"] == "NoExecute"


def test_replace_keeps_keyless_toleration(settings):
    """A toleration without a key is written back without one"""
    tol = Toleration.model_validate({"operator": "Exists"})
    patch = build_patch(pod_with([tol]), settings)
    assert patch.root[0].value[0] == {"operator": "Exists"}
    assert [t.get("key") for t in patch.root[0].value] == [
        None,
        NOT_READY_KEY,
        UNREACHABLE_KEY,
    ]


def test_replace_preserves_unknown_fields(settings):
    tol = Toleration.model_validate({"key": "example.com/gpu", "futureField": "x"})
    patch = build_patch(pod_with([tol]), settings)
    assert patch.root[0].value[0] == {"key": "example.com/gpu", "futureField": "x"}


@pytest.mark.parametrize(
    "tols",
    [None, [], [MASTER], [MASTER, CUSTOM_NOT_READY], [CUSTOM_UNREACHABLE]],
)
def test_patch_is_idempotent(settings, tols):
    """Running the mutator on a patched pod must not produce another patch"""
    pod = pod_with(tols)
    patched = apply_patch(pod, build_patch(pod, settings))
    assert not mutation_required(patched.spec.tolerations)
    assert build_patch(patched, settings) is None


def test_selector_matches():
    pod = Pod(metadata=Metadata(labels={"kubevirt.io": "virt-launcher", "a": "b"}))
    assert selector_matches(pod, {})
    assert selector_matches(pod, {"kubevirt.io": "virt-launcher"})
    assert not selector_matches(pod, {"kubevirt.io": "virt-handler"})
    assert not selector_matches(Pod(), {"kubevirt.io": "virt-launcher"})


def test_mutator_patch(settings):
    res = TolerationMutator(settings).mutate(pod_with(None))
    assert res.allowed
    assert res.patchType == "JSONPatch"
    patch = json.loads(base64.b64decode(res.patch))
    assert [tol["tolerationSeconds"] for tol in patch[0]["value"]] == [100, 200]


def test_mutator_no_patch(settings):
    res = TolerationMutator(settings).mutate(
        pod_with([CUSTOM_NOT_READY, CUSTOM_UNREACHABLE])
    )
    assert res.allowed
    assert res.patch is None
    assert res.patchType is None


def test_mutator_outside_selector():
    settings = TolerationSettings(pod_selector={"kubevirt.io": "virt-launcher"})
    res = TolerationMutator(settings).mutate(pod_with(None))
    assert res.allowed
    assert res.patch is None


def test_mutator_patch_encode_error(settings, monkeypatch):
    def fail(patch):
        raise PatchEncodeError("could not encode patch: test")

    monkeypatch.setattr(tolerations, "encode_patch", fail)
    with pytest.raises(PatchEncodeError):
        TolerationMutator(settings).mutate(pod_with(None))


def test_settings_reject_negative_seconds():
    with pytest.raises(ValueError):
        TolerationSettings(not_ready_seconds=-1)
