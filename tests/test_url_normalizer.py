import pytest

from indexer.url_normalizer import normalize_url, same_source


class TestNormalizeUrl:

    def test_lowercases_host_only(self):
        assert normalize_url("https://Docs.Example.COM/Guide/Intro") == "https://docs.example.com/Guide/Intro"

    def test_strips_trailing_slashes(self):
        assert normalize_url("https://docs.example.com/guide//") == "https://docs.example.com/guide"

    def test_root_path_stays_slash(self):
        assert normalize_url("https://docs.example.com") == "https://docs.example.com/"
        assert normalize_url("https://docs.example.com/") == "https://docs.example.com/"

    def test_drops_tracking_params(self):
        url = "https://docs.example.com/api?utm_source=x&version=2&utm_medium=y&utm_campaign=z"
        assert normalize_url(url) == "https://docs.example.com/api?version=2"

    def test_keeps_other_params_in_order(self):
        url = "https://docs.example.com/search?q=a%20b&page=2&utm_source=news"
        assert normalize_url(url) == "https://docs.example.com/search?q=a%20b&page=2"

    def test_keeps_fragment_and_scheme(self):
        assert normalize_url("http://Docs.example.com/a/#install") == "http://docs.example.com/a#install"

    def test_keeps_userinfo_case(self):
        assert normalize_url("https://User@Example.com/x") == "https://User@example.com/x"

    def test_relative_input_is_lowercased(self):
        assert normalize_url("  Docs/Guide/ ") == "docs/guide"

    @pytest.mark.parametrize("url", [
        "https://Docs.Example.com/Guide/?utm_source=a&b=1",
        "https://docs.example.com",
        "not a url/",
        "http://example.com:8080/path/#frag",
    ])
    def test_idempotent(self, url):
        once = normalize_url(url)
        assert normalize_url(once) == once


class TestSameSource:

    def test_equivalent_urls(self):
        assert same_source("https://Docs.example.com/", "https://docs.example.com?utm_source=twitter")

    def test_different_paths(self):
        assert not same_source("https://docs.example.com/v1", "https://docs.example.com/v2")

    def test_scheme_matters(self):
        assert not same_source("http://docs.example.com", "https://docs.example.com")
