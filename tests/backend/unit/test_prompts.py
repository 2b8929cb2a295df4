from artefactrelay.backend.prompts import (
    adaptation_fallback,
    build_adaptation_prompt,
    build_more_info_prompt,
    more_info_fallback,
)


def test_build_adaptation_prompt_names_artefact_profile_and_description() -> None:
    prompt = build_adaptation_prompt("Vase", "Explorer", "An ancient vase.")

    assert prompt.startswith('Adapt the following description of the artefact "Vase"')
    assert 'with the "Explorer" profile' in prompt
    assert prompt.endswith("Description: An ancient vase..")


def test_build_more_info_prompt_quotes_current_description_when_given() -> None:
    without = build_more_info_prompt("Vase", "Explorer")
    with_description = build_more_info_prompt("Vase", "Explorer", "A painted vase.")

    assert "already read" not in without
    assert with_description.endswith("The visitor has already read: A painted vase.")


def test_fallbacks_never_return_empty_text() -> None:
    assert adaptation_fallback("An ancient vase.").endswith("\n\nAn ancient vase.")
    assert more_info_fallback("Vase", "A painted vase.") == "A painted vase."
    assert '"Vase"' in more_info_fallback("Vase")
