from code_assistant import TrackedFile, detect_file_changes, resolve_label, scan_file_blocks


def tracked(identity, original_path=None, content=""):
    return TrackedFile(
        identity=identity,
        original_path=original_path or identity,
        content=content,
        extension=identity.rsplit(".", 1)[-1],
    )


def test_scan_single_block():
    text = "## a.js\n\n```js\nconsole.log(1)\n```\n"
    assert list(scan_file_blocks(text)) == [("a.js", "console.log(1)\n")]


def test_scan_finds_every_block_in_order():
    text = (
        "Here are the updates.\n\n"
        "## src/a.py\n```python\nx = 1\n\n\ny = 2\n```\n"
        "Some explanation in between.\n\n"
        "##   src/b.py   \n\n   \n```\nprint('b')\n```\n"
    )
    assert list(scan_file_blocks(text)) == [
        ("src/a.py", "x = 1\n\n\ny = 2\n"),
        ("src/b.py", "print('b')\n"),
    ]


def test_scan_empty_block_yields_empty_content():
    assert list(scan_file_blocks("## a.txt\n```\n```\n")) == [("a.txt", "")]


def test_scan_heading_without_fence_is_skipped():
    text = "## Summary\nThe file below changed.\n## a.js\n```js\nok()\n```"
    assert list(scan_file_blocks(text)) == [("a.js", "ok()\n")]


def test_scan_ignores_deeper_headings():
    assert list(scan_file_blocks("### a.js\n```js\nx\n```\n")) == []


def test_scan_unterminated_fence_at_end_of_text():
    text = "## a.js\n```js\nconsole.log(1)\n\n## b.js\n```js\nstill open"
    assert list(scan_file_blocks(text)) == []


def test_scan_unterminated_fence_does_not_swallow_next_block():
    text = "## a.js\n```js\nbroken(\n\n## b.js\n\n```js\nfixed()\n```\n"
    assert list(scan_file_blocks(text)) == [("b.js", "fixed()\n")]


def test_scan_heading_comment_before_closing_fence_stays_in_content():
    text = "## a.py\n```python\nx = 1\n## helpers\n```\n"
    assert list(scan_file_blocks(text)) == [("a.py", "x = 1\n## helpers\n")]


def test_scan_heading_comment_then_blank_line_before_closing_fence():
    text = "## a.py\n```python\nx = 1\n## end\n\n```\n## b.py\n```python\ny = 2\n```\n"
    assert list(scan_file_blocks(text)) == [
        ("a.py", "x = 1\n## end\n\n"),
        ("b.py", "y = 2\n"),
    ]


def test_scan_heading_comment_followed_by_code():
    text = "## deploy.sh\n```bash\nset -e\n## build step\nmake all\n```\n"
    assert list(scan_file_blocks(text)) == [("deploy.sh", "set -e\n## build step\nmake all\n")]


def test_detect_keeps_block_ending_in_heading_comment():
    files = [tracked("a.py"), tracked("b.py")]
    text = "## a.py\n```python\nx = 1\n## end\n\n```\n## b.py\n```python\ny = 2\n```\n"
    changes = detect_file_changes(text, files)
    assert [c.path for c in changes] == ["a.py", "b.py"]
    assert changes[0].new_content == "x = 1\n## end\n\n"


def test_scan_keeps_carriage_returns():
    text = "## a.bat\r\n```bat\r\necho hi\r\n```\r\n"
    assert list(scan_file_blocks(text)) == [("a.bat", "echo hi\r\n")]


def test_scan_keeps_inline_backticks_in_content():
    text = "## doc.py\n```python\ns = '```'\nt = 1\n```\n"
    assert list(scan_file_blocks(text)) == [("doc.py", "s = '```'\nt = 1\n")]


def test_scan_is_lazy():
    blocks = scan_file_blocks("## a\n```\n1\n```\n## b\n```\n2\n```\n")
    assert next(blocks) == ("a", "1\n")
    assert next(blocks) == ("b", "2\n")


def test_resolve_label_matches_identity_or_original_path():
    files = [tracked("src/a.js", original_path="./src/a.js")]
    assert resolve_label("src/a.js", files) is files[0]
    assert resolve_label("./src/a.js", files) is files[0]
    assert resolve_label("a.js", files) is None
    assert resolve_label("SRC/A.JS", files) is None


def test_detect_scenario_single_change():
    changes = detect_file_changes("## a.js\n\n```js\nconsole.log(1)\n```\n", [tracked("a.js")])
    assert len(changes) == 1
    assert changes[0].label == "a.js"
    assert changes[0].path == "a.js"
    assert changes[0].new_content == "console.log(1)\n"


def test_detect_drops_unknown_files():
    text = "## a.js\n\n```js\nconsole.log(1)\n```\n"
    assert detect_file_changes(text, [tracked("b.js")]) == []
    assert detect_file_changes(text, []) == []


def test_detect_uses_original_path_for_writes():
    files = [tracked("lib/util.py", original_path="/work/lib/util.py")]
    changes = detect_file_changes("## lib/util.py\n```python\npass\n```\n", files)
    assert [c.path for c in changes] == ["/work/lib/util.py"]


def test_detect_last_block_wins_and_keeps_first_position():
    files = [tracked("a.py"), tracked("b.py")]
    text = (
        "## a.py\n```python\nfirst\n```\n"
        "## b.py\n```python\nbee\n```\n"
        "## ./a.py\n```python\nnope\n```\n"
        "## a.py\n```python\nsecond\n```\n"
    )
    changes = detect_file_changes(text, files)
    assert [(c.path, c.new_content) for c in changes] == [("a.py", "second\n"), ("b.py", "bee\n")]


def test_detect_same_file_by_identity_and_original_path():
    files = [tracked("a.py", original_path="./a.py")]
    text = "## ./a.py\n```\none\n```\n## a.py\n```\ntwo\n```\n"
    changes = detect_file_changes(text, files)
    assert len(changes) == 1
    assert changes[0].label == "a.py"
    assert changes[0].new_content == "two\n"
    assert changes[0].path == "./a.py"
