"""Test that the project setup is working correctly."""

import dex_candles


def test_version() -> None:
    """Test that version is defined."""
    assert dex_candles.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from dex_candles import candles, coordinator, gaps, ingestor, pipeline, scheduler, service, storage

    # Just verify imports work
    assert candles is not None
    assert coordinator is not None
    assert gaps is not None
    assert ingestor is not None
    assert pipeline is not None
    assert scheduler is not None
    assert service is not None
    assert storage is not None
