import pytest

from registrar.core.exceptions import AlreadyEnrolledError


@pytest.fixture
def queue_section(platform, make_section):
    section_id = make_section(capacity=1)
    with platform.database.transaction() as conn:
        for student in ("a", "b", "c", "d", "e"):
            platform.waitlist.join(conn, student, section_id)
    return section_id


def test_join_appends_at_next_position(platform, queue_section, positions):
    assert positions(queue_section) == [1, 2, 3, 4, 5]
    assert [e.student_id for e in platform.waitlist.entries(queue_section)] == ["a", "b", "c", "d", "e"]


def test_join_twice_is_rejected(platform, queue_section):
    with pytest.raises(AlreadyEnrolledError):
        with platform.database.transaction() as conn:
            platform.waitlist.join(conn, "a", queue_section)


def test_leave_from_middle_renumbers_later_entries(platform, queue_section, positions):
    with platform.database.transaction() as conn:
        removed = platform.waitlist.leave(conn, "c", queue_section)

    assert removed.position == 3
    assert positions(queue_section) == [1, 2, 3, 4]
    assert [e.student_id for e in platform.waitlist.entries(queue_section)] == ["a", "b", "d", "e"]


def test_leave_unknown_student_is_noop(platform, queue_section, positions):
    with platform.database.transaction() as conn:
        assert platform.waitlist.leave(conn, "zz", queue_section) is None
    assert positions(queue_section) == [1, 2, 3, 4, 5]


def test_promote_next_pops_head(platform, queue_section, positions):
    with platform.database.transaction() as conn:
        head = platform.waitlist.promote_next(conn, queue_section)
        assert platform.waitlist.position_of(conn, "b", queue_section) == 1
        assert platform.waitlist.length(conn, queue_section) == 4

    assert head.student_id == "a"
    assert positions(queue_section) == [1, 2, 3, 4]


def test_promote_next_on_empty_queue(platform, make_section):
    section_id = make_section()
    with platform.database.transaction() as conn:
        assert platform.waitlist.promote_next(conn, section_id) is None


def test_queues_are_per_section(platform, queue_section, make_section, positions):
    other = make_section()
    with platform.database.transaction() as conn:
        entry = platform.waitlist.join(conn, "a", other)
    assert entry.position == 1
    assert positions(queue_section) == [1, 2, 3, 4, 5]


def test_equal_join_times_keep_insertion_order(platform, make_section):
    section_id = make_section()
    with platform.database.transaction() as conn:
        first = platform.waitlist.join(conn, "x", section_id)
        platform.waitlist.join(conn, "y", section_id)
        conn.execute("UPDATE waitlist_entries SET joined_at = ? WHERE section_id = ?",
                     (first.joined_at.isoformat(), section_id))

    assert [e.student_id for e in platform.waitlist.entries(section_id)] == ["x", "y"]
    with platform.database.transaction() as conn:
        assert platform.waitlist.promote_next(conn, section_id).student_id == "x"
