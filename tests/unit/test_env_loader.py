"""
Unit tests for the .env file loader.
"""

import logging

import pytest

from certkeeper.core.env_loader import load_env_file, parse_env_lines, template_variables


class TestParseEnvLines:
    """Test line-level parsing rules."""

    def test_skips_blank_lines_and_comments(self):
        """Blank lines and # comments produce no entries."""
        values = parse_env_lines(["", "   ", "# comment", "  # indented comment", "A=1"])
        assert values == {"A": "1"}

    def test_splits_on_first_equals(self):
        """Everything after the first '=' belongs to the value."""
        values = parse_env_lines(["URL=http://host/?a=b&c=d"])
        assert values == {"URL": "http://host/?a=b&c=d"}

    def test_trims_key_and_value(self):
        """Whitespace around key and value is removed."""
        values = parse_env_lines(["  KEY  =   some value   \n"])
        assert values == {"KEY": "some value"}

    def test_continuation_lines_are_joined(self):
        """A trailing backslash joins the next line before splitting."""
        values = parse_env_lines(["DOMAINS=a.com,\\\n", "b.com,\\\n", "c.com\n", "NEXT=1\n"])
        assert values == {"DOMAINS": "a.com,b.com,c.com", "NEXT": "1"}

    def test_continuation_at_end_of_file(self):
        """A dangling backslash on the last line is dropped."""
        values = parse_env_lines(["KEY=value\\"])
        assert values == {"KEY": "value"}

    def test_continuation_with_trailing_whitespace(self):
        """Whitespace after the backslash does not prevent joining."""
        values = parse_env_lines(["KEY=a \\  \n", "b\n", "NEXT=1\n"])
        assert values == {"KEY": "a b", "NEXT": "1"}

    def test_invalid_key_is_skipped_with_warning(self, caplog):
        """Keys that are not identifiers are skipped, not fatal."""
        with caplog.at_level(logging.WARNING):
            values = parse_env_lines(["1BAD=x", "BAD-KEY=y", "GOOD_KEY=z"])

        assert values == {"GOOD_KEY": "z"}
        assert "Skipping invalid key: 1BAD" in caplog.text
        assert "Skipping invalid key: BAD-KEY" in caplog.text

    def test_surrounding_quotes_are_stripped(self):
        """One level of matching quotes is removed from values."""
        values = parse_env_lines(['A="quoted value"', "B='single'", "C=\"unbalanced'"])
        assert values == {"A": "quoted value", "B": "single", "C": "\"unbalanced'"}

    def test_later_keys_override_earlier(self):
        """Repeated keys keep the last value."""
        assert parse_env_lines(["A=1", "A=2"]) == {"A": "2"}


class TestLoadEnvFile:
    """Test file loading."""

    def test_missing_file_is_noop(self, tmp_path):
        """A missing file yields an empty mapping without error."""
        assert load_env_file(tmp_path / "does-not-exist.env") == {}

    def test_loads_file(self, tmp_path):
        """Values are read from disk."""
        env = tmp_path / ".env"
        env.write_text("# stack config\nCERTBOT_DOMAINS=example.com\nSSL_EMAIL=admin@example.com\n")

        assert load_env_file(env) == {"CERTBOT_DOMAINS": "example.com", "SSL_EMAIL": "admin@example.com"}


class TestTemplateVariables:
    """Test the read-only substitution mapping."""

    def test_template_variables_overlay_environment(self, tmp_path, monkeypatch):
        """File values win over the process environment and the result is read-only."""
        monkeypatch.setenv("SERVER_NAME", "from-env")
        monkeypatch.setenv("ONLY_ENV", "yes")
        env = tmp_path / ".env"
        env.write_text("SERVER_NAME=from-file\n")

        variables = template_variables(env)

        assert variables["SERVER_NAME"] == "from-file"
        assert variables["ONLY_ENV"] == "yes"
        with pytest.raises(TypeError):
            variables["X"] = "1"
