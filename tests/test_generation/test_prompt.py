"""Tests for prompt placeholder parsing."""

from app.generation.prompt import DEFAULT_TEXT_PROMPT, build_meta_list


def texts(meta_list):
    return [
        (m["meta_type"], m["text"] or m.get("material_ref", {}).get("material_idx"))
        for m in meta_list
    ]


class TestBuildMetaList:
    def test_text_only(self):
        expected = [{"meta_type": "text", "text": "a cat surfing"}]

        assert build_meta_list("  a cat surfing ", 0) == expected

    def test_text_only_empty_prompt(self):
        assert build_meta_list("", 0) == [{"meta_type": "text", "text": DEFAULT_TEXT_PROMPT}]

    def test_placeholders_interleave(self):
        meta_list = build_meta_list("@1 runs toward @图2 on the beach", 2)

        assert texts(meta_list) == [
            ("image", 0),
            ("text", " runs toward "),
            ("image", 1),
            ("text", " on the beach"),
        ]

    def test_image_prefix_is_case_insensitive(self):
        meta_list = build_meta_list("@Image1 waves", 1)

        assert texts(meta_list) == [("image", 0), ("text", " waves")]

    def test_out_of_range_placeholders_are_dropped(self):
        meta_list = build_meta_list("@1 meets @3", 2)

        assert texts(meta_list) == [("image", 0), ("text", " meets ")]

    def test_plain_text_is_kept_as_is(self):
        meta_list = build_meta_list("make it sunny", 2)

        assert texts(meta_list) == [("text", "make it sunny")]

    def test_empty_prompt_with_images(self):
        meta_list = build_meta_list("", 3)

        assert texts(meta_list) == [
            ("text", "Use"),
            ("image", 0),
            ("text", "and"),
            ("image", 1),
            ("text", "and"),
            ("image", 2),
            ("text", "images to generate a video"),
        ]

    def test_only_dangling_placeholders(self):
        meta_list = build_meta_list("@5", 1)

        assert texts(meta_list) == [("text", "Use"), ("image", 0), ("text", "images, @5")]
