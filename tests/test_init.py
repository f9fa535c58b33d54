"""Tests for package initialization and basic imports."""


def test_package_imports():
    """Verify the main package can be imported."""
    import project_memory_keeper

    assert project_memory_keeper is not None


def test_version_defined():
    """Verify __version__ is set and follows semver format."""
    from project_memory_keeper import __version__

    parts = __version__.split(".")
    assert len(parts) == 3, f"Expected semver (X.Y.Z), got {__version__}"
    for part in parts:
        assert part.isdigit(), f"Version part '{part}' is not a digit in {__version__}"


def test_subpackages_importable():
    """Verify all subpackages can be imported."""
    import project_memory_keeper.cli
    import project_memory_keeper.mcp
    import project_memory_keeper.models
    import project_memory_keeper.storage

    assert project_memory_keeper.models.ContextDocument is not None
    assert project_memory_keeper.storage.ContextManager is not None
    assert project_memory_keeper.mcp.create_server is not None
    assert callable(project_memory_keeper.cli.cli)
