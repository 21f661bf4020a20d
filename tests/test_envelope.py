import pytest

from agent_loader import envelope
from agent_loader.errors import ProtocolError


def test_first_value_returns_first_item_data():
    resource = envelope.new_resource("https://api/manifest/")
    envelope.add_item(resource, "https://api/manifest/", "manifest", {"entries": []})
    envelope.add_item(resource, "https://api/manifest/", "other", 1)

    assert envelope.first_value(resource) == {"entries": []}


@pytest.mark.parametrize("body", [
    None,
    [],
    {},
    {"collection": {}},
    {"collection": {"items": []}},
    {"collection": {"items": [{"data": []}]}},
    {"collection": {"items": [{"data": [{"name": "manifest"}]}]}},
])
def test_first_value_rejects_unexpected_shapes(body):
    with pytest.raises(ProtocolError):
        envelope.first_value(body)


def test_first_value_surfaces_error_message():
    resource = envelope.set_error(envelope.new_resource("x"), "42", "unable to locate manifest")
    with pytest.raises(ProtocolError, match="unable to locate manifest"):
        envelope.first_value(resource)
