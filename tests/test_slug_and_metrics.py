from utils import (
    count_words,
    generate_content_slug,
    html_to_text,
    make_excerpt,
    parse_content_slug,
    reading_time,
    sanitize_html,
    slugify,
)


def test_content_slug_strips_accents_and_punctuation():
    slug = generate_content_slug("abc-123", "¡Cómo Configurar tu Feed RSS!")
    assert slug == "abc-123--como-configurar-tu-feed-rss"


def test_content_slug_without_title_is_just_the_id():
    assert generate_content_slug("abc-123", "") == "abc-123"
    assert generate_content_slug("abc-123", "!!!") == "abc-123"


def test_parse_content_slug_splits_at_first_separator():
    assert parse_content_slug("abc-123--como-configurar") == ("abc-123", "como-configurar")
    assert parse_content_slug("abc-123") == ("abc-123", None)


def test_slugify_collapses_hyphens_and_truncates():
    assert slugify("Hello -- World   again") == "hello-world-again"
    long_slug = slugify("word " * 40)
    assert len(long_slug) <= 80
    assert not long_slug.endswith("-")


def test_reading_time_rounds_up():
    assert reading_time(500) == 2
    assert reading_time(501) == 3
    assert reading_time(1) == 1


def test_reading_time_without_words_is_none():
    assert reading_time(0) is None
    assert reading_time(None) is None


def test_word_count_from_html():
    text = html_to_text("<p>One two <b>three</b></p><p>four</p>")
    assert text == "One two three four"
    assert count_words(text) == 4


def test_excerpt_is_bounded():
    excerpt = make_excerpt("word " * 200)
    assert len(excerpt) <= 300
    assert excerpt.endswith("...")


def test_sanitize_html_drops_scripts_and_resolves_links():
    html = '<p>Hi <a href="/post">there</a></p><script>alert(1)</script><img src="img/a.png">'
    cleaned = sanitize_html(html, base_url="https://example.com/blog/")
    assert "<script" not in cleaned
    assert 'href="https://example.com/post"' in cleaned
    assert 'src="https://example.com/blog/img/a.png"' in cleaned
