"""
Tests for the streaming HTML tokenizer and rewriter.
"""

import pytest

from csrfblock.config import CSRFBlockConfig
from csrfblock.rewriter import (
    HTMLRewriter,
    HTMLTokenizer,
    HiddenInput,
    MetaTag,
    Passthrough,
    State,
    TokenKind,
    is_cross_origin,
    parse_tag,
    rewrite_stream,
)

TOKEN = "0123456789abcdef"
HIDDEN = b'<input type="hidden" name="SEC" value="0123456789abcdef" />'
META = b'<meta name="csrftoken" content="0123456789abcdef"/>'


def rewrite(html: bytes, *, chunk_size=None, host="example.com", **options) -> bytes:
    rewriter = HTMLRewriter(TOKEN, CSRFBlockConfig(**options), host)
    if chunk_size is None:
        return rewriter.feed(html) + rewriter.close()
    out = b""
    for i in range(0, len(html), chunk_size):
        out += rewriter.feed(html[i:i + chunk_size])
    return out + rewriter.close()


PAGE = (
    b"<!DOCTYPE html>\n<html><HEAD><title>a <form method=post> title</title></head>\n"
    b"<body><!-- <form method=\"post\"> in a comment -->\n"
    b"<form method=\"POST\" action=\"/save\" data-x='a>b'>\n<input name=q></form>\n"
    b"<script>var s = '<form method=post>'; if (a < b) {}</script>\n"
    b"<form method=get action=/search></form>\n"
    b"<form action=\"http://evil.example/x\" method=\"post\"></form>\n"
    b"<form method=\" post \" action=\"https://EXAMPLE.com:8443/y\"></form>\n"
    b"<p>1 < 2 and <3</p><?php echo 1 ?></body></html>"
)


# ============================================================================
# Tokenizer
# ============================================================================


class TestTokenizer:

    def test_basic_token_kinds(self):
        tok = HTMLTokenizer()
        tokens = tok.feed(b"<!DOCTYPE html><p class=a>hi</p><!-- c -->") + tok.close()
        kinds = [t.kind for t in tokens]
        assert kinds == [
            TokenKind.DECLARATION,
            TokenKind.START_TAG,
            TokenKind.TEXT,
            TokenKind.END_TAG,
            TokenKind.COMMENT,
        ]
        assert tokens[1].name == "p"
        assert tokens[1].attrs == {"class": "a"}
        assert tokens[3].name == "p"

    def test_raw_bytes_preserved(self):
        data = b"<A HREF='x'>link</A> & text"
        tok = HTMLTokenizer()
        tokens = tok.feed(data) + tok.close()
        assert b"".join(t.raw for t in tokens) == data

    def test_incomplete_tag_is_held_back(self):
        tok = HTMLTokenizer()
        tokens = tok.feed(b"text<form meth")
        assert [t.raw for t in tokens] == [b"text"]
        assert tok.pending == b"<form meth"
        assert tok.state is State.IN_TAG
        tokens = tok.feed(b"od=post>")
        assert tokens[0].kind is TokenKind.START_TAG
        assert tokens[0].attrs == {"method": "post"}
        assert tok.pending == b""

    def test_quoted_value_may_contain_gt(self):
        tok = HTMLTokenizer()
        tokens = tok.feed(b'<a title="x > y" href=\'/a>b\'>') + tok.close()
        assert len(tokens) == 1
        assert tokens[0].attrs == {"title": "x > y", "href": "/a>b"}

    def test_lone_lt_is_text(self):
        tok = HTMLTokenizer()
        tokens = tok.feed(b"a < b <3 <") + tok.close()
        assert all(t.kind is TokenKind.TEXT for t in tokens)
        assert b"".join(t.raw for t in tokens) == b"a < b <3 <"

    def test_unterminated_tag_flushed_as_text_on_close(self):
        tok = HTMLTokenizer()
        assert tok.feed(b'<form method="post') == []
        tokens = tok.close()
        assert len(tokens) == 1
        assert tokens[0].kind is TokenKind.TEXT
        assert tokens[0].raw == b'<form method="post'

    def test_raw_text_elements_hide_markup(self):
        tok = HTMLTokenizer()
        tokens = tok.feed(b"<script>x = '<form method=post>';</script><form>") + tok.close()
        starts = [t.name for t in tokens if t.kind is TokenKind.START_TAG]
        assert starts == ["script", "form"]
        ends = [t.name for t in tokens if t.kind is TokenKind.END_TAG]
        assert ends == ["script"]

    def test_raw_text_end_tag_split_across_chunks(self):
        tok = HTMLTokenizer()
        tokens = tok.feed(b"<style>a{}</sty")
        tokens += tok.feed(b"LE><form>")
        tokens += tok.close()
        assert [t.name for t in tokens if t.kind is TokenKind.START_TAG] == ["style", "form"]

    def test_raw_text_requires_delimiter_after_name(self):
        tok = HTMLTokenizer()
        tokens = tok.feed(b"<title></titles><form></title>") + tok.close()
        starts = [t.name for t in tokens if t.kind is TokenKind.START_TAG]
        assert starts == ["title"]

    @pytest.mark.parametrize("comment", [b"<!-->", b"<!--->", b"<!---->"])
    def test_empty_comments_close_immediately(self, comment):
        tok = HTMLTokenizer()
        tokens = tok.feed(comment + b"<form>") + tok.close()
        assert [t.kind for t in tokens] == [TokenKind.COMMENT, TokenKind.START_TAG]
        assert tokens[0].raw == comment

    def test_noscript_content_is_markup(self):
        tok = HTMLTokenizer()
        tokens = tok.feed(b"<noscript><form method=post></noscript>") + tok.close()
        starts = [t.name for t in tokens if t.kind is TokenKind.START_TAG]
        assert starts == ["noscript", "form"]

    def test_comment_split_across_chunks(self):
        tok = HTMLTokenizer()
        tokens = tok.feed(b"<!") + tok.feed(b"-") + tok.feed(b"- <form> -") + tok.feed(b"->")
        assert len(tokens) == 1
        assert tokens[0].kind is TokenKind.COMMENT
        assert tokens[0].raw == b"<!-- <form> -->"

    def test_processing_instruction_is_declaration(self):
        tok = HTMLTokenizer()
        tokens = tok.feed(b"<?xml version='1.0'?>") + tok.close()
        assert [t.kind for t in tokens] == [TokenKind.DECLARATION]


class TestParseTag:

    def test_lowercases_and_first_occurrence_wins(self):
        name, attrs = parse_tag(b'<FORM METHOD="post" method="get" Action=/x novalidate>')
        assert name == "form"
        assert attrs == {"method": "post", "action": "/x", "novalidate": ""}

    def test_entities_are_decoded(self):
        _, attrs = parse_tag(b'<form action="http&#58;//evil.example/&amp;x">')
        assert attrs["action"] == "http://evil.example/&x"

    def test_self_closing(self):
        name, attrs = parse_tag(b'<input type="hidden"/>')
        assert name == "input"
        assert attrs["type"] == "hidden"


# ============================================================================
# Rewriter
# ============================================================================


class TestRewriter:

    def test_injects_after_each_post_form(self):
        html = b'<form method="post"></form><div></div><form method="POST" action="/b"></form>'
        out = rewrite(html)
        assert out.count(HIDDEN) == 2
        assert out == (
            b'<form method="post">' + HIDDEN + b"</form><div></div>"
            b'<form method="POST" action="/b">' + HIDDEN + b"</form>"
        )

    def test_output_is_input_plus_insertions(self):
        out = rewrite(PAGE, add_meta=True)
        assert out.replace(HIDDEN, b"").replace(META, b"") == PAGE

    def test_page_injections(self):
        out = rewrite(PAGE, add_meta=True)
        # /save form and the same-host absolute form
        assert out.count(HIDDEN) == 2
        assert b"data-x='a>b'>" + HIDDEN in out
        assert b'<form method=" post " action="https://EXAMPLE.com:8443/y">' + HIDDEN in out
        assert b"<HEAD>" + META in out
        assert out.count(META) == 1

    @pytest.mark.parametrize("chunk_size", [1, 2, 3, 5, 7, 16, 64])
    def test_chunking_does_not_change_output(self, chunk_size):
        whole = rewrite(PAGE, add_meta=True)
        assert rewrite(PAGE, chunk_size=chunk_size, add_meta=True) == whole

    def test_get_form_untouched(self):
        html = b"<form action=/s><form method=get></form>"
        assert rewrite(html) == html

    def test_cross_origin_form_untouched(self):
        html = b'<form method="post" action="http://evil.example/x"></form>'
        assert rewrite(html) == html

    def test_same_host_absolute_form_injected(self):
        html = b'<form method="post" action="https://Example.COM/x"></form>'
        assert HIDDEN in rewrite(html)

    def test_protocol_relative_action_counts_as_same_origin(self):
        html = b'<form method="post" action="//evil.example/x"></form>'
        assert HIDDEN in rewrite(html)

    def test_meta_disabled_by_default(self):
        assert rewrite(b"<html><head></head></html>") == b"<html><head></head></html>"

    def test_meta_only_after_first_head(self):
        out = rewrite(b"<head></head><head></head>", add_meta=True)
        assert out == b"<head>" + META + b"</head><head></head>"

    def test_custom_names_and_escaping(self):
        config = CSRFBlockConfig(parameter_name='a"b', add_meta=True, meta_name="x<y")
        rewriter = HTMLRewriter("tok", config, "example.com")
        out = rewriter.feed(b"<head><form method=post>") + rewriter.close()
        assert b'<meta name="x&lt;y" content="tok"/>' in out
        assert b'<input type="hidden" name="a&quot;b" value="tok" />' in out

    def test_comment_and_script_forms_untouched(self):
        html = b"<!-- <form method=post> --><script>'<form method=post>'</script>"
        assert rewrite(html) == html

    def test_noscript_form_injected(self):
        html = b'<noscript><form method="post" action="/login"></form></noscript>'
        assert rewrite(html) == (
            b'<noscript><form method="post" action="/login">' + HIDDEN + b"</form></noscript>"
        )

    @pytest.mark.parametrize("tag", [b"noembed", b"noframes"])
    def test_fallback_content_forms_injected(self, tag):
        html = b"<" + tag + b"><form method=post></form></" + tag + b">"
        assert rewrite(html).count(HIDDEN) == 1

    @pytest.mark.parametrize("comment", [b"<!-->", b"<!--->"])
    def test_form_after_empty_comment_injected(self, comment):
        html = comment + b'<form method="post"></form>'
        assert rewrite(html) == comment + b'<form method="post">' + HIDDEN + b"</form>"

    @pytest.mark.parametrize("chunk_size", [1, 2, 3])
    def test_empty_comment_chunked(self, chunk_size):
        html = b'<!--><form method="post"></form><!-- x -->'
        assert rewrite(html, chunk_size=chunk_size) == rewrite(html)

    def test_malformed_input_never_raises(self):
        html = b"<<>><form method=post<><</form <!-- <! <? ><"
        out = rewrite(html)
        assert out.replace(HIDDEN, b"") == html

    def test_closed_rewriter_returns_nothing(self):
        rewriter = HTMLRewriter(TOKEN, CSRFBlockConfig(), "example.com")
        rewriter.feed(b"<p>")
        rewriter.close()
        assert rewriter.closed
        assert rewriter.feed(b"<form method=post>") == b""
        assert rewriter.close() == b""
        assert rewriter.process(None) == b""

    def test_process_none_flushes(self):
        rewriter = HTMLRewriter(TOKEN, CSRFBlockConfig(), "example.com")
        assert rewriter.process(b"<form method=po") == b""
        assert rewriter.process(None) == b"<form method=po"

    def test_rewrite_items_are_tagged(self):
        rewriter = HTMLRewriter(TOKEN, CSRFBlockConfig(add_meta=True), "example.com")
        tokens = HTMLTokenizer().feed(b"<head><form method=post>")
        items = rewriter.rewrite_items(tokens)
        assert items == [
            Passthrough(b"<head>"),
            MetaTag("csrftoken", TOKEN),
            Passthrough(b"<form method=post>"),
            HiddenInput("SEC", TOKEN),
        ]

    def test_encoding_applied_to_fragments(self):
        config = CSRFBlockConfig(parameter_name="jeton")
        rewriter = HTMLRewriter(TOKEN, config, "example.com", encoding="utf-16-le")
        out = rewriter.feed(b"<form method=post>")
        assert out.endswith(HiddenInput("jeton", TOKEN).render("utf-16-le"))


class TestCrossOrigin:

    @pytest.mark.parametrize("action, expected", [
        (None, False),
        ("", False),
        ("/relative", False),
        ("relative/path", False),
        ("//evil.example/x", False),
        ("http://example.com/x", False),
        ("HTTPS://EXAMPLE.COM", False),
        ("http://example.com:8080/x", False),
        ("http://example.com?x", False),
        ("http://evil.example/x", True),
        ("https://evil.example", True),
        ("http://example.com.evil.example/", True),
        ("ftp://evil.example/", False),
    ])
    def test_is_cross_origin(self, action, expected):
        assert is_cross_origin(action, "example.com") is expected


@pytest.mark.asyncio
async def test_rewrite_stream():
    async def source():
        for piece in (b"<html><fo", b"rm method=post>", b"</form>", b"</html>"):
            yield piece

    rewriter = HTMLRewriter(TOKEN, CSRFBlockConfig(), "example.com")
    chunks = [chunk async for chunk in rewrite_stream(source(), rewriter)]
    assert b"".join(chunks) == b"<html><form method=post>" + HIDDEN + b"</form></html>"
    assert rewriter.closed

