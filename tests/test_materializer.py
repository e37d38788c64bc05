import time

import pytest
from conftest import FakeSession, request_error

from site_archiver import (
    Asset,
    AssetKind,
    AssetMaterializer,
    Throttle,
    asset_path_for_url,
    short_h,
)

SITE = "https://example.test"


def make_materializer(session, settings, reserved=()):
    return AssetMaterializer(session, Throttle(settings), settings, reserved=reserved)


def asset(path, kind=AssetKind.IMAGE):
    return Asset(url=f"{SITE}{path}", kind=kind, found_on=f"{SITE}/")


def test_downloads_to_path_preserving_location(session, settings, tmp_path):
    session.add(f"{SITE}/img/logo.png", b"PNGDATA", content_type="image/png")
    m = make_materializer(session, settings)
    mapping = m.materialize([asset("/img/logo.png")], tmp_path)

    assert mapping == {f"{SITE}/img/logo.png": "assets/example.test/img/logo.png"}
    assert (tmp_path / "assets/example.test/img/logo.png").read_bytes() == b"PNGDATA"
    assert m.failed == {}


def test_falls_back_to_ranged_get_when_head_is_refused(session, settings, tmp_path):
    session.add(f"{SITE}/a.css", "body{}", content_type="text/css", head_status=405)
    m = make_materializer(session, settings)
    mapping = m.materialize([asset("/a.css", AssetKind.STYLESHEET)], tmp_path)

    assert f"{SITE}/a.css" in mapping
    ranged = [h for meth, u, h in session.calls if meth == "GET" and "Range" in h]
    assert ranged == [{"Range": "bytes=0-0"}]
    assert session.methods_for(f"{SITE}/a.css") == ["HEAD", "GET", "GET"]


def test_missing_asset_is_recorded_not_mapped(session, settings, tmp_path):
    m = make_materializer(session, settings)
    mapping = m.materialize([asset("/missing.js", AssetKind.SCRIPT)], tmp_path)

    assert mapping == {}
    assert f"{SITE}/missing.js" in m.failed
    assert "404" in m.failed[f"{SITE}/missing.js"]
    assert not (tmp_path / "assets/example.test/missing.js").exists()


def test_connection_errors_fail_only_that_asset(session, settings, tmp_path):
    session.add(f"{SITE}/ok.png", b"x")
    session.errors[f"{SITE}/down.png"] = request_error()
    m = make_materializer(session, settings)
    mapping = m.materialize([asset("/down.png"), asset("/ok.png")], tmp_path)

    assert list(mapping) == [f"{SITE}/ok.png"]
    assert "connection refused" in m.failed[f"{SITE}/down.png"]


def test_missing_model_gets_empty_placeholder(session, settings, tmp_path):
    m = make_materializer(session, settings)
    mapping = m.materialize([asset("/models/chair.glb", AssetKind.MODEL)], tmp_path)

    rel = "assets/example.test/models/chair.glb"
    assert mapping == {f"{SITE}/models/chair.glb": rel}
    assert (tmp_path / rel).read_bytes() == b""
    assert f"{SITE}/models/chair.glb" in m.failed
    assert m.placeholders == {f"{SITE}/models/chair.glb"}


def test_model_placeholders_can_be_disabled(session, settings, tmp_path):
    settings.model_placeholders = False
    m = make_materializer(session, settings)
    assert m.materialize([asset("/models/chair.glb", AssetKind.MODEL)], tmp_path) == {}


def test_oversized_download_is_removed(session, settings, tmp_path):
    settings.max_bytes = 10
    session.add(f"{SITE}/big.png", b"x" * 100)
    m = make_materializer(session, settings)
    mapping = m.materialize([asset("/big.png")], tmp_path)

    assert mapping == {}
    assert "exceeded" in m.failed[f"{SITE}/big.png"]
    assert not (tmp_path / "assets/example.test/big.png").exists()


def test_empty_body_is_a_failure(session, settings, tmp_path):
    session.add(f"{SITE}/empty.png", b"")
    m = make_materializer(session, settings)
    assert m.materialize([asset("/empty.png")], tmp_path) == {}
    assert m.failed[f"{SITE}/empty.png"] == "empty response"


def test_content_type_names_extensionless_assets(session, settings, tmp_path):
    url = "https://fonts.googleapis.com/css2?family=Inter"
    session.add(url, "@font-face{}", content_type="text/css; charset=utf-8")
    m = make_materializer(session, settings)
    mapping = m.materialize(
        [Asset(url=url, kind=AssetKind.STYLESHEET, found_on=f"{SITE}/")], tmp_path
    )
    assert mapping[url] == asset_path_for_url(url, "text/css")
    assert mapping[url].endswith(".css")


def test_mapping_follows_input_order(session, settings, tmp_path):
    names = [f"/img/{i}.png" for i in range(12)]
    for n in names:
        session.add(f"{SITE}{n}", b"img")
    m = make_materializer(session, settings)
    mapping = m.materialize([asset(n) for n in names], tmp_path)
    assert list(mapping) == [f"{SITE}{n}" for n in names]


def test_duplicate_assets_download_once(session, settings, tmp_path):
    session.add(f"{SITE}/a.png", b"img")
    m = make_materializer(session, settings)
    m.materialize([asset("/a.png"), asset("/a.png")], tmp_path)
    assert session.methods_for(f"{SITE}/a.png") == ["HEAD", "GET"]


def test_claim_resolves_collisions():
    m = AssetMaterializer(None, None, None, reserved=["about.html"])
    path = "assets/h/a.png"
    assert m.claim("https://h/a.png", path) == path
    assert m.claim("https://h/a.png", path) == path
    assert m.claim("https://h/b", path) == f"assets/h/a-{short_h('https://h/b')}.png"
    assert m.claim("https://h/A.png", "assets/h/A.png") == (
        f"assets/h/A-{short_h('https://h/A.png')}.png"
    )
    assert m.claim("https://x/about", "about.html") == (
        f"about-{short_h('https://x/about')}.html"
    )


def test_same_filename_assets_get_distinct_paths(session, settings, tmp_path):
    urls = [
        f"{SITE}/style.css",
        "https://cdn.test/style.css",
        f"{SITE}/style.css?v=2",
        f"{SITE}/Style.css",
    ]
    for u in urls:
        session.add(u, "body{}", content_type="text/css")
    m = make_materializer(session, settings)
    mapping = m.materialize(
        [Asset(url=u, kind=AssetKind.STYLESHEET, found_on=f"{SITE}/") for u in urls],
        tmp_path,
    )
    assert len(set(mapping.values())) == 4
    assert all((tmp_path / rel).stat().st_size > 0 for rel in mapping.values())


def test_reserved_page_paths_are_not_reused(session, settings, tmp_path):
    session.add(f"{SITE}/index.html", b"<p>asset copy</p>", content_type="text/html")
    m = make_materializer(session, settings, reserved=["assets/example.test/index.html"])
    mapping = m.materialize([asset("/index.html", AssetKind.OTHER)], tmp_path)
    url = f"{SITE}/index.html"
    assert mapping[url] == f"assets/example.test/index-{short_h(url)}.html"


class SlowSession(FakeSession):
    """Delays every request for one URL so it finishes after its peers."""

    def __init__(self, slow_url):
        super().__init__()
        self.slow_url = slow_url

    def request(self, method, url, **kwargs):
        if url == self.slow_url:
            time.sleep(0.05)
        return super().request(method, url, **kwargs)


@pytest.mark.parametrize("slow", ["a.css", "A.css"])
def test_clashing_paths_ignore_completion_order(settings, tmp_path, slow):
    urls = [f"{SITE}/a.css", f"{SITE}/A.css"]
    session = SlowSession(f"{SITE}/{slow}")
    for u in urls:
        session.add(u, "body{}", content_type="text/css")
    m = make_materializer(session, settings)
    mapping = m.materialize(
        [Asset(url=u, kind=AssetKind.STYLESHEET, found_on=f"{SITE}/") for u in urls],
        tmp_path,
    )
    assert mapping == {
        urls[0]: "assets/example.test/a.css",
        urls[1]: f"assets/example.test/A-{short_h(urls[1])}.css",
    }
