from questiongen.services.generation import exceptions


def test_exception_error_codes_and_messages():
    # Ensure each domain exception sets the correct error_code and message
    e = exceptions.ProviderUnavailable()
    assert isinstance(e, exceptions.ProviderError)
    assert isinstance(e, exceptions.GenerationError)
    assert e.error_code == "unavailable"
    assert "unavailable" in e.message

    e2 = exceptions.ProviderRateLimited("slow down")
    assert e2.error_code == "rate_limited"
    assert e2.message == "slow down"
    assert str(e2) == "rate_limited: slow down"

    assert exceptions.ProviderUnauthenticated().error_code == "unauthenticated"
    assert exceptions.ProviderTimeout().error_code == "timeout"
    assert exceptions.ProviderUnknownError().error_code == "unknown"
    assert exceptions.ConfigurationMissing().error_code == "configuration_missing"
    assert exceptions.GenerationCancelled().error_code == "cancelled"


def test_content_errors_carry_diagnostics():
    e = exceptions.NoJsonFound(preview="Sure! Here is")
    assert e.error_code == "no_json_found"
    assert e.preview == "Sure! Here is"

    e2 = exceptions.RepairFailed("Expecting ',' delimiter at position 12", preview="{...")
    assert e2.error_code == "repair_failed"
    assert e2.parse_error.startswith("Expecting")
    assert "Expecting" in e2.message

    e3 = exceptions.InvalidStructure("sections[1].questions[0].type", "missing or empty")
    assert e3.error_code == "invalid_structure"
    assert e3.path == "sections[1].questions[0].type"
    assert str(e3).startswith("invalid_structure: sections[1]")


def test_content_errors_are_not_provider_errors():
    for cls in exceptions.CONTENT_ERRORS:
        assert not issubclass(cls, exceptions.ProviderError)
    assert not issubclass(exceptions.GenerationCancelled, exceptions.ProviderError)
