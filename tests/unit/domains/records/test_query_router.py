"""Tests for the local-first QueryRouter."""

from __future__ import annotations

import asyncio

import pytest

from wellwallet.core.gateway.client import ProtocolError
from wellwallet.core.storage.models import StoredResource
from wellwallet.domains.records.errors import (
    MissingContextError,
    NoInterpretationError,
    UnrecognizedPlanError,
)
from wellwallet.domains.records.query.plan import parse_query_plan
from wellwallet.domains.records.query.router import QueryRouter, remote_path

OBS_TOOL = "request_observation_resource"
CHOLESTEROL = {
    "resourceType": "Observation",
    "filters": {"codeSearch": {"codes": ["2093-3"]}},
}


def _run(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@pytest.fixture
def router(gateway_client, record_store, catalog, audit_logger):
    return QueryRouter(gateway_client, record_store, catalog, audit=audit_logger)


@pytest.fixture
def seeded_store(record_store, observation_factory):
    record_store.bulk_insert([
        StoredResource.from_fhir("p1", observation_factory(f"o{i}", date=f"2024-0{i + 1}-01"))
        for i in range(5)
    ])
    return record_store


class TestLocalPath:
    def test_local_hit_makes_no_gateway_calls(self, router, seeded_store, fake_gateway):
        result = _run(router.route(CHOLESTEROL, "p1"))
        assert result.provenance == "local"
        assert result.count == 5
        assert fake_gateway.requests == []

    def test_local_filters_sort_and_limit(self, router, seeded_store):
        plan = {**CHOLESTEROL, "filters": {**CHOLESTEROL["filters"], "sort": "-date", "limit": 2}}
        result = _run(router.route(plan, "p1"))
        assert [r["id"] for r in result.records] == ["o4", "o3"]

    def test_record_index_selects_one(self, router, seeded_store):
        plan = {**CHOLESTEROL, "filters": {"sort": "date"}, "recordIndex": 1}
        result = _run(router.route(plan, "p1"))
        assert [r["id"] for r in result.records] == ["o1"]
        assert result.record_index == 1
        assert "## Record 2" in result.markdown

    def test_record_index_out_of_range_is_empty_not_error(
        self, router, seeded_store, fake_gateway
    ):
        result = _run(router.route({**CHOLESTEROL, "recordIndex": 7}, "p1"))
        assert result.provenance == "local"
        assert result.records == []
        assert result.markdown == "No Observation records found."
        assert fake_gateway.requests == []

    def test_local_mode_miss_raises_without_gateway(self, router, record_store, fake_gateway):
        with pytest.raises(NoInterpretationError):
            _run(router.route({**CHOLESTEROL, "mode": "local"}, "p1"))
        assert fake_gateway.requests == []

    def test_other_patients_records_are_not_used(self, router, seeded_store, fake_gateway):
        fake_gateway.add_records("Observation", [])
        with pytest.raises(NoInterpretationError):
            _run(router.route(CHOLESTEROL, "p2"))


class TestRemotePath:
    def test_local_miss_falls_back_to_gateway(
        self, router, record_store, fake_gateway, observation_factory
    ):
        fake_gateway.add_records("Observation", [observation_factory("r1")])
        result = _run(router.route(CHOLESTEROL, "p1"))
        assert result.provenance == "remote"
        assert [r["id"] for r in result.records] == ["r1"]
        assert fake_gateway.methods[0] == "initialize"
        assert fake_gateway.calls_for(OBS_TOOL) == ["/Observation?subject=Patient/p1&code=2093-3"]

    def test_remote_mode_skips_local_cache(
        self, router, seeded_store, fake_gateway, observation_factory
    ):
        fake_gateway.add_records("Observation", [observation_factory("r1")])
        result = _run(router.route({**CHOLESTEROL, "mode": "remote"}, "p1"))
        assert result.provenance == "remote"
        assert [r["id"] for r in result.records] == ["r1"]

    def test_remote_results_filtered_by_type_and_limited(
        self, router, fake_gateway, observation_factory, patient_resource
    ):
        fake_gateway.add_records(
            "Observation", [patient_resource] + [observation_factory(f"r{i}") for i in range(4)]
        )
        plan = {**CHOLESTEROL, "filters": {**CHOLESTEROL["filters"], "limit": 2}}
        result = _run(router.route(plan, "p1"))
        assert [r["id"] for r in result.records] == ["r0", "r1"]

    def test_remote_empty_raises_no_interpretation(self, router, fake_gateway):
        with pytest.raises(NoInterpretationError, match="locally or remotely"):
            _run(router.route(CHOLESTEROL, "p1"))

    def test_patient_plan_reads_patient_record(self, router, fake_gateway, patient_resource):
        fake_gateway.patients["p1"] = patient_resource
        result = _run(router.route({"resourceType": "Patient"}, "p1"))
        assert result.provenance == "remote"
        assert result.records == [patient_resource]
        assert fake_gateway.calls_for("request_patient_resource") == ["/Patient/p1"]

    def test_transient_failure_retried_once(
        self, router, fake_gateway, recording_sleep, observation_factory
    ):
        fake_gateway.add_records("Observation", [observation_factory("r1")])
        fake_gateway.fail_next(OBS_TOOL, 503)
        result = _run(router.route(CHOLESTEROL, "p1"))
        assert result.count == 1
        assert recording_sleep.delays == [0.5]

    def test_gateway_error_keeps_classification(self, router, fake_gateway, audit_logger):
        fake_gateway.fail_next(OBS_TOOL, 400)
        with pytest.raises(ProtocolError) as excinfo:
            _run(router.route(CHOLESTEROL, "p1"))
        assert excinfo.value.status_code == 400
        event = audit_logger.get_events(action="local_query")[0]
        assert event["status"] == "failure"
        assert event["error_type"] == "ProtocolError"


class TestValidation:
    def test_missing_patient(self, router, fake_gateway):
        with pytest.raises(MissingContextError):
            _run(router.route(CHOLESTEROL, ""))
        assert fake_gateway.requests == []

    def test_invalid_plan(self, router):
        with pytest.raises(UnrecognizedPlanError):
            _run(router.route({"resourceType": "Observation", "bogus": 1}, "p1"))


class TestAudit:
    def test_answered_query_records_provenance(self, router, seeded_store, audit_logger):
        _run(router.route(CHOLESTEROL, "p1"))
        event = audit_logger.get_events(action="local_query")[0]
        assert event["provenance"] == "local"
        assert event["resource_type"] == "Observation"
        assert event["status"] == "success"


class TestRemotePathTranslation:
    def test_full_observation_search(self, catalog):
        plan = parse_query_plan({
            "resourceType": "Observation",
            "filters": {
                "codeSearch": {"codes": ["2093-3", "2085-9"]},
                "dateRange": {"start": "2024-01-01", "end": "2024-12-31"},
                "category": "laboratory",
                "sort": "-date",
                "limit": 10,
            },
        })
        assert remote_path(plan, catalog.get("Observation"), "p1") == (
            "/Observation?subject=Patient/p1&code=2093-3,2085-9&category=laboratory"
            "&date=ge2024-01-01&date=le2024-12-31&_sort=-date&_count=10"
        )

    def test_text_search_and_clinical_status(self, catalog):
        plan = parse_query_plan({
            "resourceType": "Condition",
            "filters": {"codeSearch": {"text": "asthma"}, "status": "active", "sort": "date"},
        })
        assert remote_path(plan, catalog.get("Condition"), "p1") == (
            "/Condition?subject=Patient/p1&code:text=asthma&clinical-status=active"
            "&_sort=onset-date"
        )

    def test_patient_scope_param(self, catalog):
        plan = parse_query_plan({"resourceType": "Immunization"})
        assert remote_path(plan, catalog.get("Immunization"), "p1") == (
            "/Immunization?patient=Patient/p1"
        )
