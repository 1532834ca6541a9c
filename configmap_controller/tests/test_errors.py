from __future__ import annotations

from kubernetes.client import ApiException

from configmap_controller.src.errors import ResourceError, is_conflict, is_not_found


def test_resource_error_exposes_cause_status() -> None:
    try:
        try:
            raise ApiException(status=409, reason="Conflict")
        except ApiException as exc:
            raise ResourceError("Deployment", "update", "ns1", "web") from exc
    except ResourceError as error:
        assert error.status == 409
        assert str(error) == "update Deployment ns1/web failed"


def test_resource_error_without_cause_has_no_status() -> None:
    error = ResourceError("Deployment", "list", "ns1")

    assert error.status is None
    assert str(error) == "list Deployment ns1 failed"


def test_log_fields_omit_missing_name() -> None:
    assert ResourceError("Deployment", "list", "ns1").log_fields() == {"kind": "Deployment", "namespace": "ns1"}
    assert ResourceError("ConfigMap", "get", "ns1", "cm1").log_fields() == {
        "kind": "ConfigMap",
        "namespace": "ns1",
        "resource_name": "cm1",
    }


def test_status_helpers() -> None:
    assert is_not_found(ApiException(status=404))
    assert not is_not_found(ApiException(status=500))
    assert not is_not_found(KeyError("x"))
    assert is_conflict(ApiException(status=409))
    assert not is_conflict(ApiException(status=404))
