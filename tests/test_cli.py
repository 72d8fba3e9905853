"""Unit tests for CLI commands."""

from datetime import timedelta

import pytest
import typer
from pydantic import SecretStr
from typer.testing import CliRunner

from socialsync.cli import app, build_registry, load_adapter
from socialsync.ingest import UpsertEngine
from socialsync.interfaces import Capability
from socialsync.models import ItemKind, RefreshedToken
from socialsync.utils import utc_now

runner = CliRunner()


class CliRefreshAdapter:
    """Adapter loaded by the CLI through an adapter spec."""

    async def refresh(self, refresh_token: SecretStr) -> RefreshedToken:
        return RefreshedToken(
            access_token=SecretStr("cli-access"),
            expires_at=utc_now() + timedelta(hours=2),
        )


cli_adapter_instance = CliRefreshAdapter()

ADAPTER_SPEC = f"mastodon={__name__}:CliRefreshAdapter"


@pytest.fixture
def database_url(temp_db_path):
    return f"sqlite:///{temp_db_path}"


class TestAdapterLoading:
    """Tests for adapter spec parsing."""

    def test_class_is_instantiated(self):
        """Test a class attribute yields a fresh adapter."""
        platform, adapter = load_adapter(ADAPTER_SPEC)

        assert platform == "mastodon"
        assert isinstance(adapter, CliRefreshAdapter)

    def test_instance_is_used_as_is(self):
        """Test an adapter instance is registered directly."""
        _, adapter = load_adapter(f"bluesky={__name__}:cli_adapter_instance")

        assert adapter is cli_adapter_instance

    @pytest.mark.parametrize(
        "spec",
        ["mastodon", "mastodon=module", "=module:attr", "mastodon=:attr"],
    )
    def test_malformed_spec(self, spec):
        """Test malformed specs are rejected."""
        with pytest.raises(typer.BadParameter):
            load_adapter(spec)

    def test_unknown_module(self):
        """Test unimportable modules are rejected."""
        with pytest.raises(typer.BadParameter):
            load_adapter("mastodon=socialsync_missing_module:Adapter")

    def test_build_registry(self):
        """Test specs are registered with their detected capabilities."""
        registry = build_registry([ADAPTER_SPEC])

        assert registry.platforms == ["mastodon"]
        assert registry.capabilities("mastodon") == {Capability.REFRESH}


class TestCLICommands:
    """Tests for CLI commands."""

    def test_cli_app_exists(self):
        """Test CLI app is defined."""
        assert app is not None
        assert isinstance(app, typer.Typer)

    def test_init_command(self, tmp_path):
        """Test init creates the database."""
        db_path = tmp_path / "cli.db"

        result = runner.invoke(app, ["init", "--database-url", f"sqlite:///{db_path}"])

        if result.exit_code != 0:
            print(f"stdout: {result.stdout}")
            if result.exception:
                print(f"exception: {result.exception}")

        assert result.exit_code == 0
        assert "Database ready" in result.stdout
        assert db_path.exists()

    def test_init_command_failure(self):
        """Test init reports an unusable database URL."""
        result = runner.invoke(app, ["init", "--database-url", "nosuchdialect://db"])

        assert result.exit_code == 1
        assert "Initialization failed" in result.stdout

    def test_status_command_empty(self, database_url):
        """Test status on an empty store."""
        result = runner.invoke(app, ["status", "--database-url", database_url])

        assert result.exit_code == 0
        assert "Store of Record" in result.stdout
        assert "No connections" in result.stdout

    def test_status_command_with_connections(self, database_url, make_connection):
        """Test status lists connections."""
        make_connection()

        result = runner.invoke(app, ["status", "--database-url", database_url])

        assert result.exit_code == 0
        assert "Connections" in result.stdout
        assert "No connections" not in result.stdout

    def test_refresh_command(self, database_url, vault, make_connection):
        """Test a refresh scan through a loaded adapter."""
        connection_id = make_connection(expires_in=timedelta(minutes=2))

        result = runner.invoke(
            app, ["refresh", "--database-url", database_url, "-a", ADAPTER_SPEC]
        )

        assert result.exit_code == 0
        assert "Refresh Scan" in result.stdout
        assert vault.get(connection_id).access_token.get_secret_value() == "cli-access"

    def test_refresh_command_bad_adapter(self, database_url):
        """Test an unloadable adapter fails the command."""
        result = runner.invoke(
            app, ["refresh", "--database-url", database_url, "-a", "mastodon=nowhere:Nothing"]
        )

        assert result.exit_code == 1
        assert "Refresh failed" in result.stdout

    def test_reindex_command(self, db, database_url, make_connection, user_id, post_factory):
        """Test reindex reports projected entity counts."""
        make_connection()
        UpsertEngine(db).ingest("mastodon", user_id, [post_factory("1")], ItemKind.POST)

        result = runner.invoke(app, ["reindex", "--database-url", database_url])

        assert result.exit_code == 0
        assert "Reindexed 1 posts and 1 profiles" in result.stdout

    def test_reencrypt_command(self, database_url, vault, make_connection):
        """Test reencrypt rewrites stored tokens."""
        connection_id = make_connection()

        result = runner.invoke(app, ["reencrypt", "--database-url", database_url])

        assert result.exit_code == 0
        assert "Re-encrypted 1 connection(s)" in result.stdout
        assert vault.get(connection_id).access_token.get_secret_value() == "access-0"

    def test_run_command(self, mocker, database_url):
        """Test run starts the pipeline and stops it after the duration."""
        pipeline = mocker.patch("socialsync.cli.SyncPipeline").return_value
        pipeline.registry = []
        pipeline.start = mocker.AsyncMock()
        pipeline.stop = mocker.AsyncMock(return_value={"completed": 2, "cancelled": 0})

        result = runner.invoke(
            app, ["run", "--database-url", database_url, "--duration", "0.01"]
        )

        assert result.exit_code == 0
        assert "No adapters registered" in result.stdout
        assert "2 job(s) completed" in result.stdout
        pipeline.start.assert_awaited_once()
        pipeline.stop.assert_awaited_once_with(None)
        pipeline.close.assert_called_once()
