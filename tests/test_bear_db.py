"""Tests for bearbridge.store.bear_db: read-only Bear database access."""

import sqlite3

import pytest

from bearbridge.core.errors import DatabaseError, ValidationError
from bearbridge.store.bear_db import BearDatabase, extract_header_section, format_bear_date


@pytest.fixture
def db(bear_db_path):
    database = BearDatabase(bear_db_path)
    yield database
    database.close()


class TestHelpers:
    def test_core_data_epoch(self):
        assert format_bear_date(0) == "2001-01-01T00:00:00+00:00"
        assert format_bear_date(86400) == "2001-01-02T00:00:00+00:00"
        assert format_bear_date(None) is None

    def test_header_section(self):
        text = "# Title\n## Plan\nstep 1\nstep 2\n## Notes\nmore"
        assert extract_header_section(text, "plan") == "step 1\nstep 2"
        assert extract_header_section(text, "Notes") == "more"
        assert extract_header_section(text, "Missing") is None

    def test_header_with_regex_characters(self):
        assert extract_header_section("## Q3 (draft)\nbody", "Q3 (draft)") == "body"


class TestGetNote:
    def test_by_id(self, db):
        note = db.get_note(id="NOTE-2")
        assert note.title == "Groceries"
        assert "milk" in note.text
        assert note.trashed is False

    def test_by_title(self, db):
        assert db.get_note(title="Roadmap").id == "NOTE-4"

    def test_missing(self, db):
        assert db.get_note(id="NOPE") is None

    def test_header_section_only(self, db):
        note = db.get_note(id="NOTE-1", header="Agenda")
        assert note.text == "Budget review\nHiring"

    def test_missing_header(self, db):
        assert db.get_note(id="NOTE-1", header="Decisions") is None

    def test_exclude_trashed(self, db):
        assert db.get_note(id="NOTE-3").trashed is True
        assert db.get_note(id="NOTE-3", exclude_trashed=True) is None

    def test_requires_id_or_title(self, db):
        with pytest.raises(ValidationError):
            db.get_note()


class TestSearchAndTags:
    def test_search_term_skips_trashed(self, db):
        ids = {note.identifier for note in db.search_notes(term="budget")}
        assert ids == {"NOTE-1", "NOTE-4"}

    def test_search_by_tag(self, db):
        notes = db.search_notes(tag="home")
        assert [note.identifier for note in notes] == ["NOTE-2"]
        assert notes[0].tags == ["home"]

    def test_search_term_and_tag(self, db):
        assert [n.identifier for n in db.search_notes(term="Q3", tag="work")] == ["NOTE-4"]

    def test_summaries_carry_created(self, db):
        note = db.search_notes(term="Groceries")[0]
        assert note.created == format_bear_date(300.0)

    def test_tags_sorted(self, db):
        assert [tag.name for tag in db.get_tags()] == ["archive", "home", "work"]

    def test_notes_by_tag_newest_first(self, db):
        assert [n.identifier for n in db.get_notes_by_tag("work")] == ["NOTE-4", "NOTE-1"]

    def test_unknown_tag(self, db):
        assert db.get_notes_by_tag("nothing") == []


class TestConnection:
    def test_missing_file(self, tmp_path):
        with pytest.raises(DatabaseError, match="not found"):
            BearDatabase(tmp_path / "absent.sqlite").get_tags()

    def test_opened_read_only(self, db):
        db.get_tags()
        with pytest.raises(sqlite3.OperationalError):
            db._get_conn().execute("DELETE FROM ZSFNOTE")

    def test_query_errors_wrapped(self, tmp_path):
        path = tmp_path / "empty.sqlite"
        sqlite3.connect(str(path)).close()
        with BearDatabase(path) as database:
            with pytest.raises(DatabaseError, match="query failed"):
                database.get_tags()

    def test_context_manager_closes(self, bear_db_path):
        with BearDatabase(bear_db_path) as database:
            database.get_tags()
        assert database._conn is None
