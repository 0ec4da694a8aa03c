"""
Unit tests for the dotted-path resolver used by the mapping engine.
"""
from services.invoice_pipeline.path_resolver import MISSING, get_path, has_path, set_path, split_path


MOCK_CONTEXT = {
    "invoice": {"invoice_number": "A-100", "total_amount": 0},
    "client": {"contact_name": "Ana", "address": None},
    "items": [{"quantity": 2}, {"quantity": 5}],
}


class TestGetPath:
    """Tests for get_path."""

    def test_nested_key(self):
        assert get_path(MOCK_CONTEXT, "client.contact_name") == "Ana"

    def test_list_index(self):
        assert get_path(MOCK_CONTEXT, "items.1.quantity") == 5

    def test_missing_key_returns_sentinel(self):
        assert get_path(MOCK_CONTEXT, "client.email") is MISSING

    def test_index_out_of_range(self):
        assert get_path(MOCK_CONTEXT, "items.7.quantity") is MISSING

    def test_non_numeric_segment_on_list(self):
        assert get_path(MOCK_CONTEXT, "items.first") is MISSING

    def test_descend_into_scalar(self):
        assert get_path(MOCK_CONTEXT, "invoice.invoice_number.length") is MISSING

    def test_empty_path(self):
        assert get_path(MOCK_CONTEXT, "") is MISSING
        assert get_path(MOCK_CONTEXT, None) is MISSING

    def test_falsy_values_are_found(self):
        """Zero and None are real values, not missing."""
        assert get_path(MOCK_CONTEXT, "invoice.total_amount") == 0
        assert get_path(MOCK_CONTEXT, "client.address") is None
        assert has_path(MOCK_CONTEXT, "client.address") is True

    def test_sentinel_is_falsy(self):
        assert not MISSING
        assert repr(MISSING) == "MISSING"


class TestSetPath:
    """Tests for set_path."""

    def test_creates_intermediate_dicts(self):
        target = {}
        set_path(target, "customer.name", "Ana")
        assert target == {"customer": {"name": "Ana"}}

    def test_merges_into_existing(self):
        target = {"customer": {"id": 1}}
        set_path(target, "customer.name", "Ana")
        assert target == {"customer": {"id": 1, "name": "Ana"}}

    def test_replaces_non_dict_intermediate(self):
        target = {"customer": "Ana"}
        set_path(target, "customer.name", "Ana")
        assert target == {"customer": {"name": "Ana"}}

    def test_returns_target(self):
        target = {}
        assert set_path(target, "a", 1) is target

    def test_empty_path_is_noop(self):
        target = {"a": 1}
        set_path(target, "", 2)
        assert target == {"a": 1}

    def test_split_ignores_empty_segments(self):
        assert split_path(" a..b. ") == ["a", "b"]
