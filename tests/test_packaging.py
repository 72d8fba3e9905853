"""Tests for the package metadata."""

import tomllib
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent


class TestProjectMetadata:
    """Tests for pyproject.toml."""

    def test_readme_is_project_readme(self):
        """Test the package long description comes from the project README."""
        project = tomllib.loads((ROOT / "pyproject.toml").read_text())["project"]

        assert project["readme"] == "README.md"
        assert (ROOT / project["readme"]).read_text().startswith("# SocialSync")

    def test_console_script(self):
        """Test the socialsync command points at the typer app."""
        project = tomllib.loads((ROOT / "pyproject.toml").read_text())["project"]

        assert project["scripts"]["socialsync"] == "socialsync.cli:app"
