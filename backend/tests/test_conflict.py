"""Tests for conflict copy naming and divergence stats."""

from datetime import date

from markview.client.conflict import calculate_diff, generate_conflict_copy_name


def test_copy_name_carries_date():
    assert generate_conflict_copy_name("Meeting Notes", date(2026, 3, 9)) == "Meeting Notes (conflict 2026-03-09)"


def test_copy_name_replaces_previous_suffix():
    name = generate_conflict_copy_name("Meeting Notes (Conflict 2026-03-09)", date(2026, 4, 1))
    assert name == "Meeting Notes (conflict 2026-04-01)"


def test_diff_counts_lines_unique_to_each_side():
    stats = calculate_diff("# Title\nkept\nmine", "# Title\nkept\ntheirs\nmore")

    assert stats.local_lines == 3
    assert stats.server_lines == 4
    assert stats.added_lines == 1
    assert stats.removed_lines == 2
    assert stats.changed_percentage == 75


def test_identical_content_has_no_changes():
    stats = calculate_diff("same\ntext", "same\ntext")
    assert (stats.added_lines, stats.removed_lines, stats.changed_percentage) == (0, 0, 0)
