import random
import pytest

from errors import NotFoundError, ValidationError
from form_content import (
    AGREEMENT_OPTIONS, add_question, add_section, copy_question, delete_question, delete_section,
    ensure_identity_section, move_question, normalize_loaded, parse_rating_scale, renumber,
    reorder_question, reorder_sections, section_display_numbers, update_question, validate_content,
)
from schemas import FormContent, Question, Section

def _two_sections():
    """Section B is listed first but displays second."""
    return FormContent(
        sections=[Section(id="B", title="B", order=1), Section(id="A", title="A", order=0)],
        questions=[
            Question(question_id="b1", section_id="B", question="b1"),
            Question(question_id="a1", section_id="A", question="a1"),
            Question(question_id="b2", section_id="B", question="b2"),
            Question(question_id="a2", section_id="A", question="a2"),
        ],
    )

def _numbers(content):
    return {q.question_id: q.question_no for q in content.questions}

def _assert_dense(content):
    nums = sorted(q.question_no for q in content.questions)
    assert nums == list(range(1, len(content.questions) + 1))

def test_renumber_follows_section_order_then_list_order():
    c = renumber(_two_sections())
    assert _numbers(c) == {"a1": 1, "a2": 2, "b1": 3, "b2": 4}
    # list order itself is untouched
    assert [q.question_id for q in c.questions] == ["b1", "a1", "b2", "a2"]

def test_renumber_puts_orphans_last():
    c = _two_sections()
    c.questions.insert(0, Question(question_id="orphan", section_id="gone"))
    c = renumber(c)
    assert _numbers(c)["orphan"] == 5
    _assert_dense(c)

def test_random_edit_sequences_keep_numbers_dense():
    rng = random.Random(7)
    c = renumber(_two_sections())
    for _ in range(60):
        ids = [q.question_id for q in c.questions]
        sections = [s.id for s in c.sections]
        op = rng.choice(["add", "delete", "move", "reorder", "copy", "sections"])
        if op == "add" or not ids:
            c = add_question(c, "text", rng.choice(sections))
        elif op == "delete":
            c = delete_question(c, rng.choice(ids))
        elif op == "move":
            c = move_question(c, rng.choice(ids), rng.choice(sections), rng.choice([None, 0, 1, 5]))
        elif op == "reorder":
            c = reorder_question(c, rng.choice(ids), rng.randint(0, 4))
        elif op == "copy":
            c = copy_question(c, rng.choice(ids))
        else:
            order = list(sections)
            rng.shuffle(order)
            c = reorder_sections(c, order)
        _assert_dense(c)
        # numbering agrees with (section order, list position)
        order_of = {s.id: s.order for s in c.sections}
        expected = sorted(
            range(len(c.questions)),
            key=lambda i: (order_of.get(c.questions[i].section_id, float("inf")), i),
        )
        assert [c.questions[i].question_no for i in expected] == list(range(1, len(c.questions) + 1))

def test_copy_question_inserted_after_source():
    c = copy_question(renumber(_two_sections()), "a1")
    idx = [q.question_id for q in c.questions].index("a1")
    dup = c.questions[idx + 1]
    assert dup.question == "a1 (Copy)"
    assert dup.question_id != "a1"
    assert dup.question_no == 2
    assert _numbers(c)["a2"] == 3

def test_reorder_stays_within_section():
    c = reorder_question(renumber(_two_sections()), "a2", 0)
    assert _numbers(c)["a2"] == 1 and _numbers(c)["a1"] == 2
    assert _numbers(c)["b1"] == 3

def test_move_question_to_other_section_at_index():
    c = move_question(renumber(_two_sections()), "b2", "A", 1)
    moved = next(q for q in c.questions if q.question_id == "b2")
    assert moved.section_id == "A"
    assert _numbers(c) == {"a1": 1, "b2": 2, "a2": 3, "b1": 4}

def test_move_question_unknown_section():
    with pytest.raises(NotFoundError):
        move_question(_two_sections(), "a1", "nope")

def test_delete_section_moves_questions_to_first_remaining():
    c = delete_section(renumber(_two_sections()), "A")
    assert {q.section_id for q in c.questions} == {"B"}
    _assert_dense(c)

def test_cannot_delete_last_section():
    c = FormContent(sections=[Section(id="only")], questions=[])
    with pytest.raises(ValidationError):
        delete_section(c, "only")

def test_add_section_appends_with_next_order():
    c = add_section(_two_sections())
    assert c.sections[-1].order == 2
    assert c.sections[-1].title == "Section 3"

def test_reorder_sections_requires_every_section():
    with pytest.raises(ValidationError):
        reorder_sections(_two_sections(), ["A"])
    c = reorder_sections(renumber(_two_sections()), ["B", "A"])
    assert _numbers(c) == {"b1": 1, "b2": 2, "a1": 3, "a2": 4}

def test_agreement_scale_cannot_be_overridden():
    c = add_question(FormContent(sections=[Section(id="s")]), "sls", "s", required=False, options=["Yes", "No"])
    q = c.questions[0]
    assert q.required is True and q.options == AGREEMENT_OPTIONS
    c = update_question(c, q.question_id, {"required": False, "options": ["x"]})
    assert c.questions[0].required is True
    assert c.questions[0].options == AGREEMENT_OPTIONS

def test_update_question_keeps_identity_fields():
    c = renumber(_two_sections())
    c = update_question(c, "a1", {"question": "new text", "question_no": 99, "section_id": "B"})
    q = next(q for q in c.questions if q.question_id == "a1")
    assert q.question == "new text" and q.section_id == "A" and q.question_no == 1

def test_update_question_null_keeps_required_fields():
    c = renumber(_two_sections())
    c = update_question(c, "a1", {"question": None, "required": None, "type": None})
    q = next(q for q in c.questions if q.question_id == "a1")
    assert q.question == "a1" and q.type == "text" and q.required is False

def test_add_question_skips_identity_section():
    c = ensure_identity_section(FormContent())
    c = add_question(c, "text")
    identity, regular = sorted(c.sections, key=lambda s: s.order)
    assert regular.title == "Section 1" and regular.marker is None
    assert [q.type for q in c.questions if q.section_id == identity.id] == ["bcInput"]
    assert c.questions[-1].section_id == regular.id
    # a second question reuses the same regular section
    c = add_question(c, "text")
    assert len(c.sections) == 2 and c.questions[-1].section_id == regular.id

def test_add_question_defaults():
    c = FormContent(sections=[Section(id="s")])
    c = add_question(c, "radio", "s")
    c = add_question(c, "rating", "s")
    assert c.questions[0].options == ["Option 1", "Option 2"]
    assert c.questions[1].scale == 5
    with pytest.raises(ValidationError):
        add_question(c, "slider", "s")

@pytest.mark.parametrize("value,expected", [
    (3, 3), (5, 5), (7, 7), (10, 10), ("10", 10), (" 7 ", 7),
    (0, None), (4, None), (6, None), (11, None), (-5, None), ("five", None), ("", None), (None, None), (True, None),
])
def test_rating_scale_accepts_only_allowed_values(value, expected):
    assert parse_rating_scale(value) == expected

def test_validate_content_reports_every_problem():
    c = FormContent(
        sections=[Section(id="s")],
        questions=[
            Question(question_no=1, type="rating", scale=4, section_id="s"),
            Question(question_no=2, type="select", options=[], section_id="s"),
            Question(question_no=3, type="bogus", section_id="s"),
        ],
    )
    with pytest.raises(ValidationError) as exc:
        validate_content(c)
    message = str(exc.value)
    assert "Question 1" in message and "Question 2" in message and "Question 3" in message

def test_identity_section_is_pinned_and_idempotent():
    c = FormContent(sections=[Section(id="s", order=0)], questions=[Question(question_id="q", section_id="s")])
    c = ensure_identity_section(c)
    identity = c.sections[0]
    assert identity.marker == "identity" and identity.order == -1
    lookup = c.questions[0]
    assert lookup.type == "bcInput" and lookup.required and lookup.section_id == identity.id
    assert lookup.question_no == 1 and _numbers(c)["q"] == 2
    again = ensure_identity_section(c)
    assert len(again.sections) == 2 and len(again.questions) == 2
    assert section_display_numbers(again.sections) == {identity.id: "0", "s": "1"}

def test_reorder_sections_keeps_identity_first():
    c = ensure_identity_section(_two_sections())
    c = reorder_sections(c, ["B", "A"])
    identity = next(s for s in c.sections if s.marker == "identity")
    assert identity.order == -1
    assert min(c.questions, key=lambda q: q.question_no).type == "bcInput"

def test_normalize_loaded_heals_legacy_content():
    legacy = FormContent(questions=[
        Question(question_id="x", question_no=7),
        Question(question_id="y", question_no=7, type="sls", required=False),
    ])
    c = normalize_loaded(legacy)
    assert [s.id for s in c.sections] == ["default"]
    assert all(q.section_id == "default" for q in c.questions)
    assert _numbers(c) == {"x": 1, "y": 2}
    assert c.questions[1].required is True
