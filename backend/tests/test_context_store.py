from __future__ import annotations

import pytest

from batchgrader.context_store import ContextNotFoundError, ContextStore, format_rubric, summarize_course
from batchgrader.models import Course, DocumentType, GradingScale, RubricCriterion, RubricLevel
from batchgrader.retrieval.index import ChunkIndex


@pytest.fixture
def context(store) -> ContextStore:
    return ContextStore(store, ChunkIndex(store, embedder=None))


def test_summarize_course_builds_summary_from_metadata() -> None:
    course = Course(id="c", name="Biology", code="BIO 101", term="Fall", description="Cells and systems.", key_themes=["energy", "evolution"])

    assert summarize_course(course) == "Biology (BIO 101) Term: Fall. Cells and systems. Key themes: energy, evolution."
    assert summarize_course(course.model_copy(update={"summary": " Explicit. "})) == "Explicit."


def test_format_rubric_lists_weights_and_levels() -> None:
    criteria = [
        RubricCriterion(
            id="criterion-1",
            name="Evidence",
            description="Uses data",
            weight=2,
            levels=[RubricLevel(label="Strong", score=10, description="Cites sources")],
        )
    ]

    assert format_rubric(criteria) == "- Evidence (weight 2): Uses data\n    Strong (10): Cites sources"


def test_documents_without_embedder_are_stored_unindexed(context) -> None:
    course = context.create_course("Biology")

    document = context.add_document(course.id, "Syllabus", "Week 1: cells.", document_type=DocumentType.POLICY)

    assert document.chunk_count == 0
    assert [doc.id for doc in context.list_documents(course.id)] == [document.id]


def test_missing_parents_raise(context) -> None:
    with pytest.raises(ContextNotFoundError):
        context.add_document("missing", "Doc", "text")
    with pytest.raises(ContextNotFoundError):
        context.create_assignment("missing", "Talk")
    with pytest.raises(ContextNotFoundError):
        context.create_bundle_version("missing")


def test_bundle_version_is_an_immutable_snapshot(context) -> None:
    course = context.create_course("Biology", summary="Cells, energy and evolution.")
    rubric = context.create_rubric(
        "Talk rubric",
        [RubricCriterion(id="criterion-1", name="Evidence", description="Uses data", weight=2)],
        GradingScale(kind="points", max_score=20),
    )
    assignment = context.create_assignment(course.id, "Lab talk", "Present your results.", rubric.id)
    shared = context.add_document(course.id, "Lecture 1", "Mitochondria produce ATP.")
    scoped = context.add_document(course.id, "Lab sheet", "Measure oxygen uptake.", assignment_id=assignment.id)
    context.add_document(course.id, "Other lab", "Unrelated.", assignment_id="other-assignment")
    bundle = context.create_bundle(course.id, assignment.id, "Fall bundle")

    first = context.create_bundle_version(bundle.id, evaluation_guidance="Be generous on delivery.")
    context.add_document(course.id, "Lecture 2", "Later material.")
    second = context.create_bundle_version(bundle.id)

    assert first.version == 1
    assert second.version == 2
    assert set(first.document_ids) == {shared.id, scoped.id}
    assert len(second.document_ids) == 3
    assert context.get_bundle(bundle.id).latest_version_id == second.id

    grading = context.get_grading_context(first.id)
    assert grading.course_id == course.id
    assert grading.assignment_id == assignment.id
    assert grading.criteria[0].name == "Evidence"
    assert grading.grading_scale.max_score == 20
    assert grading.rubric_text == "- Evidence (weight 2): Uses data"
    assert grading.assignment_summary == "Lab talk\nPresent your results."
    assert grading.course_summary == "Cells, energy and evolution."
    assert grading.evaluation_guidance == "Be generous on delivery."
    assert "[Document: Lecture 1]" in grading.document_context
    assert "Lecture 2" not in grading.document_context


def test_bundle_requires_assignment_in_course(context) -> None:
    course = context.create_course("Biology")
    other = context.create_course("Chemistry")
    assignment = context.create_assignment(other.id, "Titration talk")

    with pytest.raises(ContextNotFoundError):
        context.create_bundle(course.id, assignment.id, "Mismatched")


def test_grading_context_for_unknown_version_is_none(context) -> None:
    assert context.get_grading_context("missing") is None
