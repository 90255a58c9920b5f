from __future__ import annotations

import pytest

from app.schemas import HistoryQuery
from services.errors import InvalidQuery
from services.request_planner import AggregatorBackend, QueryMode, RequestPlanner, split_targets


@pytest.fixture()
def planner() -> RequestPlanner:
    return RequestPlanner(max_page_size=100)


def test_last_n_zero_requests_raw_data(planner: RequestPlanner) -> None:
    result = planner.classify("room1", "temperature", HistoryQuery(lastN=0))

    assert result.mode is QueryMode.raw
    assert result.multi_target is False


def test_missing_parameters_are_rejected(planner: RequestPlanner) -> None:
    with pytest.raises(InvalidQuery) as excinfo:
        planner.classify("room1", "temperature", HistoryQuery())

    assert "aggrMethod" in excinfo.value.keys
    assert "hLimit" in excinfo.value.keys


def test_page_without_offset_is_not_raw(planner: RequestPlanner) -> None:
    with pytest.raises(InvalidQuery):
        planner.classify("room1", "temperature", HistoryQuery(hLimit=10))


def test_zero_page_and_offset_request_raw_data(planner: RequestPlanner) -> None:
    result = planner.classify("room1", "temperature", HistoryQuery(hLimit=0, hOffset=0))

    assert result.mode is QueryMode.raw


@pytest.mark.parametrize(
    ("page_size", "row_limit"),
    [(0, 0), (0, 100), (10, 10), (50, 100), (100, 100)],
)
def test_ordered_paging_within_max_page_size_is_accepted(
    planner: RequestPlanner, page_size: int, row_limit: int
) -> None:
    query = HistoryQuery(lastN=row_limit, hLimit=page_size, hOffset=0)

    assert planner.classify("room1", "temperature", query).mode is QueryMode.raw


@pytest.mark.parametrize(
    ("query", "offending"),
    [
        (HistoryQuery(lastN=101), ["lastN"]),
        (HistoryQuery(hLimit=101, hOffset=0), ["hLimit"]),
        (HistoryQuery(lastN=5, hLimit=6, hOffset=0), ["lastN", "hLimit"]),
        (HistoryQuery(lastN=0, hLimit=1, hOffset=0), ["lastN", "hLimit"]),
    ],
)
def test_paging_violations_name_offending_parameters(
    planner: RequestPlanner, query: HistoryQuery, offending: list[str]
) -> None:
    with pytest.raises(InvalidQuery) as excinfo:
        planner.classify("room1", "temperature", query)

    assert excinfo.value.keys == offending
    assert "hLimit <= lastN <= config.maxPageSize" in str(excinfo.value)


def test_csv_filetype_is_case_insensitive(planner: RequestPlanner) -> None:
    result = planner.classify("room1", "temperature", HistoryQuery(filetype="CSV"))

    assert result.mode is QueryMode.raw
    assert result.export_csv is True


def test_comma_separated_targets_fan_out(planner: RequestPlanner) -> None:
    result = planner.classify("room1,room2", "temperature,humidity", HistoryQuery(lastN=3))

    assert result.multi_target is True
    assert result.entity_ids == ["room1", "room2"]
    assert result.attr_names == ["temperature", "humidity"]


def test_csv_export_with_several_targets_is_rejected(planner: RequestPlanner) -> None:
    with pytest.raises(InvalidQuery) as excinfo:
        planner.classify("room1,room2", "temperature", HistoryQuery(filetype="csv"))

    assert excinfo.value.keys == ["filetype"]


def test_raw_request_naming_an_aggregation_with_several_targets_is_rejected(planner: RequestPlanner) -> None:
    query = HistoryQuery(lastN=3, aggrMethod="max", aggrPeriod="day")

    with pytest.raises(InvalidQuery) as excinfo:
        planner.classify("room1", "temperature,humidity", query)

    assert excinfo.value.keys == ["aggrMethod", "aggrPeriod"]


def test_raw_request_naming_an_aggregation_for_one_target_is_served(planner: RequestPlanner) -> None:
    result = planner.classify("room1", "temperature", HistoryQuery(lastN=3, aggrMethod="max"))

    assert result.mode is QueryMode.raw
    assert result.multi_target is False


def test_targets_collapsing_to_one_entry_use_the_normalized_names(planner: RequestPlanner) -> None:
    result = planner.classify("room1,room1", " temperature, ", HistoryQuery(lastN=3))

    assert result.multi_target is False
    assert result.entity_ids == ["room1"]
    assert result.attr_names == ["temperature"]


def test_method_with_period_uses_pipeline_backend(planner: RequestPlanner) -> None:
    result = planner.classify("room1", "temperature", HistoryQuery(aggrMethod="avg", aggrPeriod="hour"))

    assert result.mode is QueryMode.on_demand
    assert result.backend is AggregatorBackend.pipeline


def test_method_with_cap_uses_computed_backend(planner: RequestPlanner) -> None:
    result = planner.classify("room1,room2", "temperature", HistoryQuery(aggrMethod="min", hLimit=50))

    assert result.mode is QueryMode.on_demand
    assert result.backend is AggregatorBackend.computed
    assert result.multi_target is True


def test_method_period_and_cap_read_precomputed_rollups(planner: RequestPlanner) -> None:
    query = HistoryQuery(aggrMethod="max", aggrPeriod="day", hLimit=10)

    result = planner.classify("room1", "temperature", query)

    assert result.mode is QueryMode.precomputed
    assert result.multi_target is False


def test_precomputed_rollups_with_several_targets_are_rejected(planner: RequestPlanner) -> None:
    query = HistoryQuery(aggrMethod="max", aggrPeriod="day", hLimit=10)

    with pytest.raises(InvalidQuery) as excinfo:
        planner.classify("room1,room2", "temperature", query)

    assert excinfo.value.keys == ["aggrMethod", "aggrPeriod", "hLimit"]


def test_period_without_method_is_rejected(planner: RequestPlanner) -> None:
    with pytest.raises(InvalidQuery):
        planner.classify("room1", "temperature", HistoryQuery(aggrPeriod="day"))


def test_split_targets_drops_blanks_and_duplicates() -> None:
    assert split_targets("room1, room2,,room1") == ["room1", "room2"]
    assert split_targets("room1") == ["room1"]
