import json

import pytest

from engine.errors import MalformedPayload, SchemaViolation
from engine.report_schema import DEFAULT_SIMULATION_TYPE, validate_payload, validate_report


def test_valid_report_parses(report_text):
    model = validate_report(report_text)
    assert model.title == "Simple Pendulum"
    assert model.table_headers == ["Length (m)", "T^2 (s^2)"]
    assert model.table_data[1] == [0.4, 1.62]
    assert model.graph_config.x_column_index == 0
    assert model.graph_config.title == "T^2 against L"
    assert model.questions[0].answer.startswith("So that")
    assert model.simulation_type == "pendulum"
    assert model.column_count == 2


def test_not_json_is_malformed():
    with pytest.raises(MalformedPayload):
        validate_report("Here is your report: {oops")


def test_non_object_root_is_schema_violation():
    with pytest.raises(SchemaViolation) as excinfo:
        validate_report("[1, 2, 3]")
    assert excinfo.value.field == "<root>"


def test_missing_field_is_named(payload):
    del payload["theory"]
    with pytest.raises(SchemaViolation) as excinfo:
        validate_payload(payload)
    assert excinfo.value.field == "theory"


def test_wrong_type_is_named(payload):
    payload["objectives"] = "not a list"
    with pytest.raises(SchemaViolation) as excinfo:
        validate_payload(payload)
    assert excinfo.value.field == "objectives"


def test_non_numeric_cell_rejected(payload):
    payload["tableData"][2][1] = "2.43"
    with pytest.raises(SchemaViolation) as excinfo:
        validate_payload(payload)
    assert excinfo.value.field == "tableData[2][1]"


def test_boolean_cell_rejected(payload):
    payload["tableData"][0][0] = True
    with pytest.raises(SchemaViolation):
        validate_payload(payload)


def test_ragged_row_rejected(payload):
    payload["tableData"].append([1.0])
    with pytest.raises(SchemaViolation) as excinfo:
        validate_payload(payload)
    assert excinfo.value.field == "tableData[3]"


def test_graph_column_out_of_range(payload):
    payload["graphConfig"]["yColumnIndex"] = 2
    with pytest.raises(SchemaViolation) as excinfo:
        validate_payload(payload)
    assert excinfo.value.field == "graphConfig.yColumnIndex"


def test_null_graph_config_and_questions(payload):
    payload["graphConfig"] = None
    payload["questions"] = None
    model = validate_payload(payload)
    assert model.graph_config is None
    assert model.questions == []


def test_missing_questions_defaults_to_empty(payload):
    del payload["questions"]
    assert validate_payload(payload).questions == []


def test_graph_labels_default_to_empty(payload):
    payload["graphConfig"] = {"xColumnIndex": 0, "yColumnIndex": 1}
    config = validate_payload(payload).graph_config
    assert (config.x_label, config.y_label, config.title) == ("", "", "")


@pytest.mark.parametrize("value", ["rocket", None, 3, ""])
def test_unknown_simulation_type_falls_back(payload, value):
    payload["simulationType"] = value
    assert validate_payload(payload).simulation_type == DEFAULT_SIMULATION_TYPE


def test_simulation_type_is_normalised(payload):
    payload["simulationType"] = " Circuit "
    assert validate_payload(payload).simulation_type == "circuit"


def test_extra_keys_ignored(payload):
    payload["author"] = "someone"
    assert validate_payload(payload).title == "Simple Pendulum"


def test_payload_round_trip_keeps_camel_case(report_model):
    data = json.loads(report_model.to_json())
    assert data["tableHeaders"] == ["Length (m)", "T^2 (s^2)"]
    assert data["graphConfig"]["xColumnIndex"] == 0
    assert validate_payload(data) == report_model
