import pytest
from conftest import FakeRenderer

from site_archiver import Crawler, PageFetchError, SeedUnreachableError, short_h

SITE = "https://example.test"


def html_with_links(*hrefs):
    return "".join(f'<a href="{h}">{h}</a>' for h in hrefs)


SITE_PAGES = {
    f"{SITE}/": "<title>Home</title>" + html_with_links("/a", "/b", "https://other.test/x"),
    f"{SITE}/a": html_with_links("/c", "/"),
    f"{SITE}/b": html_with_links("/a"),
    f"{SITE}/c": html_with_links("/d"),
    f"{SITE}/d": "<p>deep</p>",
}


def crawl(settings, renderer, seed=f"{SITE}/", **kwargs):
    return Crawler(renderer, settings).crawl(seed, **kwargs)


def test_breadth_first_within_depth(settings):
    renderer = FakeRenderer(SITE_PAGES)
    pages = crawl(settings, renderer, max_depth=1)

    assert [p.url for p in pages] == [f"{SITE}/", f"{SITE}/a", f"{SITE}/b"]
    assert pages[0].title == "Home"
    assert [p.output_path for p in pages] == ["index.html", "a.html", "b.html"]


def test_depth_two_reaches_grandchildren(settings):
    pages = crawl(settings, FakeRenderer(SITE_PAGES), max_depth=2)
    assert [p.url for p in pages] == [
        f"{SITE}/",
        f"{SITE}/a",
        f"{SITE}/b",
        f"{SITE}/c",
    ]


def test_page_budget_is_respected(settings):
    pages = crawl(settings, FakeRenderer(SITE_PAGES), max_depth=5, max_pages=2)
    assert len(pages) == 2


def test_each_url_is_fetched_once(settings):
    renderer = FakeRenderer(SITE_PAGES)
    crawl(settings, renderer, max_depth=5)
    assert sorted(renderer.fetched) == sorted(set(renderer.fetched))
    assert "https://other.test/x" not in renderer.fetched


def test_links_are_same_origin_only(settings):
    pages = crawl(settings, FakeRenderer(SITE_PAGES), max_depth=0)
    assert pages[0].links == [f"{SITE}/a", f"{SITE}/b"]


def test_tracking_params_and_fragments_collapse(settings):
    renderer = FakeRenderer(
        {
            f"{SITE}/": html_with_links("/p?utm_source=x", "/p#top", "/p"),
            f"{SITE}/p": "<p>p</p>",
        }
    )
    pages = crawl(settings, renderer)
    assert [p.url for p in pages] == [f"{SITE}/", f"{SITE}/p"]
    assert renderer.fetched == [f"{SITE}/", f"{SITE}/p"]


def test_failed_page_is_skipped(settings):
    renderer = FakeRenderer(SITE_PAGES, failures={f"{SITE}/a": ("HTTP 500", False)})
    pages = crawl(settings, renderer, max_depth=1)
    assert [p.url for p in pages] == [f"{SITE}/", f"{SITE}/b"]


def test_unreachable_seed_raises(settings):
    renderer = FakeRenderer({}, failures={f"{SITE}/": ("timed out", True)})
    with pytest.raises(SeedUnreachableError) as exc:
        crawl(settings, renderer)
    assert "timed out" in str(exc.value)
    assert renderer.fetched == [f"{SITE}/"] * (settings.page_retries + 1)


class FlakyRenderer(FakeRenderer):
    def __init__(self, pages, flaky_failures):
        super().__init__(pages)
        self.remaining = flaky_failures

    def fetch(self, url):
        if self.remaining:
            self.remaining -= 1
            self.fetched.append(url)
            raise PageFetchError(url, "HTTP 503", retryable=True)
        return super().fetch(url)


def test_retryable_failures_are_retried(settings):
    renderer = FlakyRenderer({f"{SITE}/": "<p>ok</p>"}, flaky_failures=2)
    pages = crawl(settings, renderer)
    assert [p.url for p in pages] == [f"{SITE}/"]
    assert len(renderer.fetched) == 3


def test_non_retryable_failures_are_not_retried(settings):
    renderer = FakeRenderer(SITE_PAGES, failures={f"{SITE}/b": ("HTTP 404", False)})
    crawl(settings, renderer, max_depth=1)
    assert renderer.fetched.count(f"{SITE}/b") == 1


def test_seed_redirect_extends_origin(settings):
    renderer = FakeRenderer(
        {
            "https://www.example.test/": html_with_links(
                "https://www.example.test/about"
            ),
            "https://www.example.test/about": "<p>about</p>",
        },
        redirects={"http://example.test/": "https://www.example.test/"},
    )
    pages = crawl(settings, renderer, seed="http://example.test/")
    assert [p.url for p in pages] == [
        "http://example.test/",
        "https://www.example.test/about",
    ]
    assert pages[0].final_url == "https://www.example.test/"


def test_crawls_do_not_share_state(settings):
    renderer = FakeRenderer(SITE_PAGES)
    crawler = Crawler(renderer, settings)
    first = crawler.crawl(f"{SITE}/", max_depth=1)
    second = crawler.crawl(f"{SITE}/", max_depth=1)
    assert [p.url for p in first] == [p.url for p in second]


def test_equivalent_url_forms_get_distinct_page_files(settings):
    renderer = FakeRenderer(
        {
            f"{SITE}/": html_with_links("/about", "/about.html", "/index.html", "/About"),
            f"{SITE}/about": "<p>one</p>",
            f"{SITE}/about.html": "<p>two</p>",
            f"{SITE}/index.html": "<p>three</p>",
            f"{SITE}/About": "<p>four</p>",
        }
    )
    pages = crawl(settings, renderer, max_depth=1)

    assert [p.output_path for p in pages] == [
        "index.html",
        "about.html",
        f"about-{short_h(f'{SITE}/about.html')}.html",
        f"index-{short_h(f'{SITE}/index.html')}.html",
        f"About-{short_h(f'{SITE}/About')}.html",
    ]
    assert len({p.output_path.lower() for p in pages}) == len(pages)
