"""Unit tests for routing predicates."""

import pytest

from inbox_routing.base import AgentCapacity, Conversation
from inbox_routing.predicates import (
    FIELD_NAMES,
    AllOf,
    Condition,
    Not,
    PredicateError,
    evaluate,
    is_known_field,
    parse_predicate,
    predicate_to_dict,
    unknown_fields,
)


CONTEXT = {
    "conversation": {
        "priority": 2,
        "tags": ["vip", "billing"],
        "channel": "whatsapp",
        "contact_id": None,
        "attributes": {"plan": "enterprise"},
    },
    "agent": {
        "skills": ["billing", "sales"],
        "workload": 0.4,
    },
}


class TestParsing:
    """Tests for reading predicate documents."""

    def test_parse_condition(self):
        """Test a leaf condition."""
        predicate = parse_predicate({"field": "conversation.priority", "op": "lte", "value": 2})

        assert predicate == Condition(field="conversation.priority", operator="lte", value=2)

    def test_parse_nested_groups(self):
        """Test all/any/not groups nest."""
        predicate = parse_predicate({
            "all": [
                {"field": "conversation.channel", "op": "eq", "value": "whatsapp"},
                {"not": {"field": "conversation.tags", "op": "contains", "value": "spam"}},
            ]
        })

        assert isinstance(predicate, AllOf)
        assert isinstance(predicate.predicates[1], Not)

    def test_list_values_become_tuples(self):
        """Test parsed predicates are hashable."""
        predicate = parse_predicate({"field": "agent.skills", "op": "contains_all", "value": ["a", "b"]})

        assert predicate.value == ("a", "b")
        hash(predicate)

    def test_round_trip_document(self):
        """Test a document survives parse and serialize."""
        document = {
            "any": [
                {"field": "conversation.priority", "op": "lte", "value": 2},
                {"field": "conversation.tags", "op": "contains_any", "value": ["vip"]},
            ]
        }

        assert predicate_to_dict(parse_predicate(document)) == document

    @pytest.mark.parametrize("document", [
        "not-a-mapping",
        {"op": "eq", "value": 1},
        {"field": "conversation.priority"},
        {"all": {"field": "x", "op": "eq"}},
    ])
    def test_malformed_documents_rejected(self, document):
        """Test structurally broken documents raise."""
        with pytest.raises(PredicateError):
            parse_predicate(document)

    def test_unknown_operator_is_accepted(self):
        """Test unknown operators parse and are handled at evaluation."""
        predicate = parse_predicate({"field": "conversation.priority", "op": "approximately", "value": 2})

        assert predicate.operator == "approximately"


class TestEvaluation:
    """Tests for evaluating predicates."""

    @pytest.mark.parametrize("document,expected", [
        ({"field": "conversation.priority", "op": "eq", "value": 2}, True),
        ({"field": "conversation.priority", "op": "ne", "value": 2}, False),
        ({"field": "conversation.priority", "op": "lt", "value": 3}, True),
        ({"field": "conversation.priority", "op": "gte", "value": 3}, False),
        ({"field": "conversation.channel", "op": "in", "value": ["whatsapp", "sms"]}, True),
        ({"field": "conversation.channel", "op": "not_in", "value": ["sms"]}, True),
        ({"field": "conversation.tags", "op": "contains", "value": "vip"}, True),
        ({"field": "agent.skills", "op": "contains_all", "value": ["billing", "sales"]}, True),
        ({"field": "agent.skills", "op": "contains_all", "value": ["billing", "tech"]}, False),
        ({"field": "agent.skills", "op": "contains_any", "value": ["tech", "sales"]}, True),
        ({"field": "conversation.attributes.plan", "op": "eq", "value": "enterprise"}, True),
        ({"field": "agent.workload", "op": "lt", "value": 0.5}, True),
    ])
    def test_operators(self, document, expected):
        """Test each operator against the sample context."""
        assert evaluate(parse_predicate(document), CONTEXT) is expected

    def test_exists(self):
        """Test exists treats None as absent."""
        assert evaluate(parse_predicate({"field": "conversation.channel", "op": "exists"}), CONTEXT)
        assert not evaluate(parse_predicate({"field": "conversation.contact_id", "op": "exists"}), CONTEXT)
        assert evaluate(
            parse_predicate({"field": "conversation.attributes.missing", "op": "exists", "value": False}),
            CONTEXT,
        )

    def test_unknown_field_is_false(self):
        """Test a missing field fails closed."""
        predicate = parse_predicate({"field": "conversation.region", "op": "eq", "value": "eu"})

        assert evaluate(predicate, CONTEXT) is False

    def test_negated_unknown_field(self):
        """Test not() over an unrecognized field still matches nothing."""
        predicate = parse_predicate({"not": {"field": "conversation.region", "op": "eq", "value": "eu"}})

        assert evaluate(predicate, CONTEXT) is False

    def test_unknown_field_poisons_whole_tree(self):
        """Test one unrecognized field inside any() fails the whole predicate."""
        predicate = parse_predicate({
            "any": [
                {"field": "conversation.priority", "op": "eq", "value": 2},
                {"not": {"field": "agent.teem", "op": "eq", "value": "tier1"}},
            ]
        })

        assert unknown_fields(predicate) == ["agent.teem"]
        assert evaluate(predicate, CONTEXT) is False

    @pytest.mark.parametrize("path,known", [
        ("conversation.priority", True),
        ("agent.workload", True),
        ("conversation.attributes.anything", True),
        ("conversation.attributes", True),
        ("agent.teem", False),
        ("agent.skills.billing", False),
        ("conversation", False),
        ("customer.name", False),
    ])
    def test_is_known_field(self, path, known):
        """Test which dotted paths predicates may name."""
        assert is_known_field(path) is known

    def test_field_names_match_contexts(self):
        """Test the recognized fields are exactly what the records expose."""
        conversation = Conversation(conversation_id="conv_1", tenant_id="org_acme")
        agent = AgentCapacity(agent_id="agent_a", tenant_id="org_acme")

        assert FIELD_NAMES["conversation"] == set(conversation.to_context())
        assert FIELD_NAMES["agent"] == set(agent.to_context())

    def test_unknown_operator_is_false(self):
        """Test an unknown operator fails closed."""
        predicate = parse_predicate({"field": "conversation.priority", "op": "approximately", "value": 2})

        assert evaluate(predicate, CONTEXT) is False

    def test_type_mismatch_is_false(self):
        """Test incomparable types never raise."""
        predicate = parse_predicate({"field": "conversation.priority", "op": "gt", "value": "high"})

        assert evaluate(predicate, CONTEXT) is False

    def test_contains_on_scalar_is_false(self):
        """Test contains on a non-collection field."""
        predicate = parse_predicate({"field": "conversation.channel", "op": "contains", "value": "w"})

        assert evaluate(predicate, CONTEXT) is False

    def test_empty_groups(self):
        """Test empty all() is true and empty any() is false."""
        assert evaluate(parse_predicate({"all": []}), CONTEXT) is True
        assert evaluate(parse_predicate({"any": []}), CONTEXT) is False
