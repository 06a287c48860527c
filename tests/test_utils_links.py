"""Tests for link extraction and resolution."""

from __future__ import annotations

from docweave.models import Link
from docweave.utils.links import (
    document_links,
    extract_links,
    normalize_path,
    parse_aliases,
    resolve_path,
)


class TestNormalizePath:
    def test_slashes(self) -> None:
        assert normalize_path("./notes\\\\sub//file.md/") == "notes/sub/file.md"

    def test_empty(self) -> None:
        assert normalize_path("") == ""


class TestResolvePath:
    def test_appends_extension(self) -> None:
        assert resolve_path("Project Alpha") == "Project Alpha.md"

    def test_keeps_extension(self) -> None:
        assert resolve_path("image.png") == "image.png"

    def test_alias_lookup_is_case_insensitive(self) -> None:
        assert resolve_path("PG", {"pg": "databases/postgres.md"}) == "databases/postgres.md"

    def test_relative_to_base(self) -> None:
        assert resolve_path("../shared/intro", base_path="docs/guide") == "docs/shared/intro.md"
        assert resolve_path("./sibling.md", base_path="docs") == "docs/sibling.md"


class TestExtractLinks:
    """Test the Markdown link scanner."""

    def test_wikilinks_with_alias_and_anchor(self) -> None:
        assert extract_links("See [[Target|shown]] and [[Other#Section]].") == ["Target", "Other"]

    def test_markdown_links(self) -> None:
        text = "Read [the guide](docs/guide.md#intro) and [space](My%20Note.md)."

        assert extract_links(text) == ["docs/guide.md", "My Note.md"]

    def test_external_links_skipped(self) -> None:
        text = "[site](https://example.com) [mail](mailto:a@b.c) [[Local]]"

        assert extract_links(text) == ["Local"]

    def test_code_spans_skipped(self) -> None:
        text = "`[[NotALink]]` and\n```\n[[AlsoNot]]\n```\n[[Real]]"

        assert extract_links(text) == ["Real"]

    def test_escaped_brackets_skipped(self) -> None:
        assert extract_links(r"\[[NotALink]] [[Real]]") == ["Real"]

    def test_nested_brackets_in_label(self) -> None:
        assert extract_links("[a [nested] label](target.md)") == ["target.md"]


class TestParseAliases:
    def test_inline_list(self) -> None:
        assert parse_aliases("---\naliases: [PG, \"Postgres DB\"]\n---") == ["PG", "Postgres DB"]

    def test_scalar(self) -> None:
        assert parse_aliases("aliases: PG") == ["PG"]

    def test_dash_list(self) -> None:
        assert parse_aliases("aliases:\n  - PG\n  - 'Postgres'\ntags: [db]") == ["PG", "Postgres"]

    def test_missing(self) -> None:
        assert parse_aliases("tags: [db]") == []


class TestDocumentLinks:
    """Test typed link resolution for whole documents."""

    def test_frontmatter_links_are_structural(self) -> None:
        text = "---\nup: \"[[Ontology/Databases]]\"\n---\nMentions [[sqlite]] and [[Ontology/Databases]]."

        links = document_links(text, "postgres.md")

        assert links == [
            Link("Ontology/Databases.md", "structural"),
            Link("sqlite.md", "body"),
        ]

    def test_self_links_dropped(self) -> None:
        assert document_links("[[postgres]] [[other]]", "postgres.md") == [Link("other.md", "body")]

    def test_relative_links_resolve_from_document_folder(self) -> None:
        links = document_links("[up](../index.md)", "notes/deep/page.md")

        assert links == [Link("notes/index.md", "body")]
