import re
import time

import pytest

import offline_crawler
from offline_crawler import (
    BasicStats,
    CapacityExceeded,
    ConfigurationError,
    ConsoleOutput,
    ContentType,
    CrawlInterrupted,
    CrawlRow,
    ERROR_TIMEOUT,
    AllowedDomains,
    add_random_query_param,
    build_session,
    extract_html_extras,
    get_charset,
    get_final_user_agent,
    load_config_file,
    parse_args,
)

URL = "http://example.com/"


class TestConfigFile:
    def test_toml_groups(self, tmp_path):
        cfg = tmp_path / "crawler.toml"
        cfg.write_text(
            '[crawl]\nworkers = 7\ncrawl_assets = ["images"]\n'
            '[export]\noffline_export_dir = "out"\n',
            encoding="utf-8",
        )
        args = parse_args(["--config", str(cfg), URL])
        assert args.workers == 7
        assert args.crawl_assets == ["images"]
        assert args.offline_export_dir == "out"

    def test_yaml(self, tmp_path):
        cfg = tmp_path / "crawler.yaml"
        cfg.write_text("crawl:\n  timeout: 9.5\ngeneral:\n  verbose: true\n", encoding="utf-8")
        args = parse_args(["--config", str(cfg), URL])
        assert args.timeout == 9.5
        assert args.verbose is True

    def test_cli_overrides_config(self, tmp_path):
        cfg = tmp_path / "crawler.toml"
        cfg.write_text("[crawl]\nworkers = 7\n", encoding="utf-8")
        args = parse_args(["--config", str(cfg), "--workers", "2", URL])
        assert args.workers == 2

    def test_unsupported_format(self, tmp_path):
        cfg = tmp_path / "crawler.ini"
        cfg.write_text("[crawl]\n", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            load_config_file(str(cfg))

    def test_yaml_must_be_mapping(self, tmp_path):
        cfg = tmp_path / "crawler.yml"
        cfg.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            load_config_file(str(cfg))


class TestArgs:
    def test_defaults(self):
        args = parse_args([URL])
        assert args.workers == 3
        assert args.timeout == 5.0
        assert args.max_queue_length == 2000
        assert args.max_visited_urls == 5000
        assert args.max_url_length == 2000
        assert args.device == "desktop"
        assert args.offline_export_filename_sanitization == "special-chars-to-underscore"

    def test_repeatable_options(self):
        args = parse_args(
            [
                URL,
                "--crawl-assets", "images",
                "--crawl-assets", "styles",
                "--include-regex", "/blog/",
                "--allowed-domain-for-external-files", "*.cdn.net",
            ]
        )
        assert args.crawl_assets == ["images", "styles"]
        assert args.include_regex == ["/blog/"]
        assert args.allowed_domain_for_external_files == ["*.cdn.net"]

    def test_invalid_sanitization_choice(self):
        with pytest.raises(SystemExit):
            parse_args([URL, "--offline-export-filename-sanitization", "rot13"])


class TestMain:
    def test_invalid_url(self):
        with pytest.raises(SystemExit) as excinfo:
            offline_crawler.main(["ftp://example.com/"])
        assert excinfo.value.code == 1

    def test_success(self, monkeypatch):
        calls = []
        monkeypatch.setattr(
            offline_crawler.Crawler,
            "run",
            lambda self: calls.append(self.settings) or BasicStats.from_records([], time.monotonic()),
        )
        offline_crawler.main([URL, "--workers", "0"])
        (settings,) = calls
        assert settings.workers == 1
        assert settings.extra_columns == ["Title"]

    def test_interrupt_exit_code(self, monkeypatch):
        def run(self):
            raise CrawlInterrupted(BasicStats.from_records([], time.monotonic(), partial=True))

        monkeypatch.setattr(offline_crawler.Crawler, "run", run)
        with pytest.raises(SystemExit) as excinfo:
            offline_crawler.main([URL])
        assert excinfo.value.code == 130

    def test_capacity_exit_code(self, monkeypatch):
        def run(self):
            raise CapacityExceeded("Set higher --max-queue-length.")

        monkeypatch.setattr(offline_crawler.Crawler, "run", run)
        with pytest.raises(SystemExit) as excinfo:
            offline_crawler.main([URL])
        assert excinfo.value.code == 1

    def test_bad_device_exit_code(self):
        with pytest.raises(SystemExit) as excinfo:
            offline_crawler.main([URL, "--device", "watch"])
        assert excinfo.value.code == 1


class TestHttp:
    def test_user_agent(self, make_settings):
        assert "iPhone" in get_final_user_agent(make_settings(device="mobile"))
        assert get_final_user_agent(make_settings(user_agent="bot/1.0", device="tablet")) == "bot/1.0"
        with pytest.raises(ConfigurationError):
            get_final_user_agent(make_settings(device="watch"))

    def test_session(self, make_settings):
        settings = make_settings(retries=2, accept_encoding="gzip")
        s = build_session(settings, "bot/1.0")
        assert s.headers["User-Agent"] == "bot/1.0"
        assert s.headers["Accept-Encoding"] == "gzip"
        assert s.get_adapter("http://example.com/").max_retries.total == 2

    def test_random_query_param(self):
        assert re.match(r"^http://example\.com/a\?_r=[0-9a-f]{8}$", add_random_query_param("http://example.com/a"))
        assert re.match(r"^http://example\.com/a\?x=1&_r=[0-9a-f]{8}$", add_random_query_param("http://example.com/a?x=1"))

    def test_charset(self):
        assert get_charset("text/html; charset=ISO-8859-1") == "iso8859-1"
        assert get_charset('text/css; charset="windows-1252"') == "cp1252"
        assert get_charset("text/html; charset=bogus") == "utf-8"
        assert get_charset(None) == "utf-8"

    def test_html_extras(self):
        extras = extract_html_extras(
            '<html><head><title> A &amp; B </title>'
            '<meta name="keywords" content="x, y"></head><body><p>t</p></body></html>'
        )
        assert extras["Title"] == "A & B"
        assert extras["Keywords"] == "x, y"
        assert extras["Description"] == ""
        assert extras["DOM"] == 6


def test_allowed_domains():
    policy = AllowedDomains(static_files=["*.cdn.net", "IMG.example.org"], crawling=["docs.example.org"])
    assert policy.is_domain_allowed_for_static_files("a.cdn.net")
    assert policy.is_domain_allowed_for_static_files("img.example.org")
    assert not policy.is_domain_allowed_for_static_files("cdn.net.evil.com")
    assert policy.is_external_domain_allowed_for_crawling("docs.example.org")
    assert not policy.is_external_domain_allowed_for_crawling("img.example.org")


def test_console_output(make_settings, capsys):
    output = ConsoleOutput(make_settings())
    output.add_table_header()
    output.add_table_row(
        CrawlRow("http://example.com/slow", ERROR_TIMEOUT, 5.0, 0, ContentType.OTHER_FILE, {}, 1, 2)
    )
    output.add_total_stats(BasicStats.from_records([], time.monotonic(), partial=True))
    printed = capsys.readouterr().out
    assert "Timeout" in printed
    assert "1/2" in printed
    assert "PARTIAL RESULTS" in printed
