from artefactrelay.backend.errors import (
    MissingFieldsError,
    RetryExhausted,
    UpstreamError,
    UpstreamTimeout,
)


def test_public_dict_uses_default_message_and_omits_empty_meta() -> None:
    error = UpstreamTimeout()

    assert error.to_public_dict() == {
        "error": "The assistant service was too slow to respond",
        "code": "upstream.timeout",
    }
    assert isinstance(error, UpstreamError)


def test_public_dict_includes_meta_when_present() -> None:
    error = RetryExhausted(meta={"attempts": 3})

    assert error.status_code == 500
    assert error.to_public_dict()["meta"] == {"attempts": 3}
    assert str(error) == "Failed to generate TTS audio"


def test_missing_fields_error_lists_fields() -> None:
    error = MissingFieldsError(["artefact", "profile"])

    payload = error.to_public_dict()

    assert error.status_code == 400
    assert payload["fields"] == ["artefact", "profile"]
    assert payload["error"] == "Missing or invalid fields: artefact, profile"
