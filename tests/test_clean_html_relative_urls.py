from utils import sanitize_html


def test_sanitize_html_resolves_relative_urls_with_base():
    html = '<p><a href="details.html">Read more</a><img src="../img/photo.png" alt="Photo"/></p>'
    cleaned = sanitize_html(html, base_url="https://example.com/articles/2025/")

    assert 'href="https://example.com/articles/2025/details.html"' in cleaned
    assert 'src="https://example.com/articles/img/photo.png"' in cleaned


def test_sanitize_html_relative_urls_without_base_neutralized():
    html = '<p><a href="details.html">Read more</a><img src="img/photo.png" alt="Photo"/></p>'
    cleaned = sanitize_html(html)

    assert 'href="#"' in cleaned
    assert "img/photo.png" not in cleaned


def test_sanitize_html_strips_handlers_and_trackers():
    html = (
        '<p onclick="steal()">Hi <a href="javascript:alert(1)">x</a></p>'
        '<img src="https://t.example.com/pixel.gif" width="1" height="1">'
    )
    cleaned = sanitize_html(html, base_url="https://example.com/")

    assert "onclick" not in cleaned
    assert "javascript:" not in cleaned
    assert "pixel.gif" not in cleaned
