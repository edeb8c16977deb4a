"""Course context: courses, rubrics, assignments, documents and bundle versions.

A bundle version freezes the assignment, rubric and document selection used to
grade a batch, so later edits to the course never change how an existing batch
is graded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from uuid import uuid4

from batchgrader.models import (
    Assignment,
    Bundle,
    BundleVersion,
    Course,
    CourseDocument,
    DocumentType,
    GradingScale,
    Rubric,
    RubricCriterion,
)
from batchgrader.record_store import RecordStore
from batchgrader.retrieval.index import ChunkIndex

logger = logging.getLogger(__name__)

DOCUMENT_EXCERPT_CHARS = 2000


class ContextNotFoundError(LookupError):
    pass


@dataclass
class GradingContext:
    bundle_version_id: str
    course_id: str
    assignment_id: str
    criteria: list[RubricCriterion] = field(default_factory=list)
    grading_scale: GradingScale | None = None
    rubric_text: str = ""
    assignment_summary: str = ""
    document_ids: list[str] = field(default_factory=list)
    document_context: str = ""
    course_summary: str = ""
    evaluation_guidance: str | None = None


def summarize_course(course: Course) -> str:
    """Explicit course summary, or one assembled from the course metadata."""
    if course.summary and course.summary.strip():
        return course.summary.strip()
    parts = [course.name if not course.code else f"{course.name} ({course.code})"]
    if course.term:
        parts.append(f"Term: {course.term}.")
    if course.description:
        parts.append(course.description.strip())
    if course.key_themes:
        parts.append(f"Key themes: {', '.join(course.key_themes)}.")
    return " ".join(parts)


def format_rubric(criteria: list[RubricCriterion]) -> str:
    lines = []
    for criterion in criteria:
        line = f"- {criterion.name} (weight {criterion.weight:g})"
        if criterion.description:
            line += f": {criterion.description}"
        lines.append(line)
        lines.extend(f"    {level.label} ({level.score:g}): {level.description}" for level in criterion.levels)
    return "\n".join(lines)


class ContextStore:
    def __init__(self, store: RecordStore, index: ChunkIndex | None = None) -> None:
        self.store = store
        self.index = index

    def _put(self, prefix: str, record_id: str, record) -> None:
        self.store.set(f"{prefix}:{record_id}", record.model_dump_json())

    def _load(self, prefix: str, record_id: str, model):
        raw = self.store.get(f"{prefix}:{record_id}")
        return model.model_validate_json(raw) if raw is not None else None

    # Courses

    def create_course(
        self,
        name: str,
        *,
        code: str | None = None,
        term: str | None = None,
        description: str | None = None,
        summary: str | None = None,
        key_themes: list[str] | None = None,
    ) -> Course:
        if not name.strip():
            raise ValueError("Course name is required")
        course = Course(
            id=uuid4().hex,
            name=name.strip(),
            code=code,
            term=term,
            description=description,
            summary=summary,
            key_themes=key_themes or [],
        )
        self._put("course", course.id, course)
        self.store.add_to_set("courses", course.id)
        return course

    def get_course(self, course_id: str) -> Course | None:
        return self._load("course", course_id, Course)

    def list_courses(self) -> list[Course]:
        courses = [self.get_course(course_id) for course_id in self.store.set_members("courses")]
        return sorted((course for course in courses if course), key=lambda course: course.created_at)

    def update_course_summary(self, course_id: str, summary: str, key_themes: list[str] | None = None) -> Course | None:
        course = self.get_course(course_id)
        if course is None:
            return None
        course.summary = summary
        if key_themes is not None:
            course.key_themes = key_themes
        self._put("course", course.id, course)
        return course

    # Rubrics and assignments

    def create_rubric(self, name: str, criteria: list[RubricCriterion], grading_scale: GradingScale | None = None) -> Rubric:
        rubric = Rubric(id=uuid4().hex, name=name, criteria=criteria, grading_scale=grading_scale or GradingScale())
        self._put("rubric", rubric.id, rubric)
        return rubric

    def get_rubric(self, rubric_id: str) -> Rubric | None:
        return self._load("rubric", rubric_id, Rubric)

    def create_assignment(self, course_id: str, name: str, instructions: str = "", rubric_id: str | None = None) -> Assignment:
        if self.get_course(course_id) is None:
            raise ContextNotFoundError(f"Course {course_id} not found")
        if rubric_id and self.get_rubric(rubric_id) is None:
            raise ContextNotFoundError(f"Rubric {rubric_id} not found")
        assignment = Assignment(
            id=uuid4().hex,
            course_id=course_id,
            name=name,
            instructions=instructions,
            rubric_id=rubric_id,
        )
        self._put("assignment", assignment.id, assignment)
        return assignment

    def get_assignment(self, assignment_id: str) -> Assignment | None:
        return self._load("assignment", assignment_id, Assignment)

    # Documents

    def add_document(
        self,
        course_id: str,
        name: str,
        content: str,
        *,
        document_type: DocumentType = DocumentType.OTHER,
        assignment_id: str | None = None,
    ) -> CourseDocument:
        """Store a course document and index it for retrieval when an embedder is configured."""
        if self.get_course(course_id) is None:
            raise ContextNotFoundError(f"Course {course_id} not found")
        document = CourseDocument(
            id=uuid4().hex,
            course_id=course_id,
            name=name,
            content=content,
            document_type=document_type,
            assignment_id=assignment_id,
        )
        if self.index is not None and self.index.embedder is not None:
            document.chunk_count = len(self.index.index_document(document))
        else:
            logger.info("document stored without indexing", extra={"document_id": document.id})
        self._put("document", document.id, document)
        self.store.add_to_set(f"course_documents:{course_id}", document.id)
        return document

    def get_document(self, document_id: str) -> CourseDocument | None:
        return self._load("document", document_id, CourseDocument)

    def list_documents(self, course_id: str) -> list[CourseDocument]:
        documents = [self.get_document(doc_id) for doc_id in self.store.set_members(f"course_documents:{course_id}")]
        return sorted((doc for doc in documents if doc), key=lambda doc: doc.created_at)

    def delete_document(self, document_id: str) -> bool:
        document = self.get_document(document_id)
        if document is None:
            return False
        if self.index is not None:
            self.index.delete_document_chunks(document_id)
        self.store.remove_from_set(f"course_documents:{document.course_id}", document_id)
        self.store.delete(f"document:{document_id}")
        return True

    # Bundles

    def create_bundle(self, course_id: str, assignment_id: str, name: str) -> Bundle:
        assignment = self.get_assignment(assignment_id)
        if assignment is None or assignment.course_id != course_id:
            raise ContextNotFoundError(f"Assignment {assignment_id} not found in course {course_id}")
        bundle = Bundle(id=uuid4().hex, course_id=course_id, assignment_id=assignment_id, name=name)
        self._put("bundle", bundle.id, bundle)
        return bundle

    def get_bundle(self, bundle_id: str) -> Bundle | None:
        return self._load("bundle", bundle_id, Bundle)

    def create_bundle_version(
        self,
        bundle_id: str,
        *,
        document_ids: list[str] | None = None,
        evaluation_guidance: str | None = None,
    ) -> BundleVersion:
        """Snapshot the bundle's assignment, rubric and documents as a new immutable version."""
        bundle = self.get_bundle(bundle_id)
        if bundle is None:
            raise ContextNotFoundError(f"Bundle {bundle_id} not found")
        assignment = self.get_assignment(bundle.assignment_id)
        if assignment is None:
            raise ContextNotFoundError(f"Assignment {bundle.assignment_id} not found")
        rubric = self.get_rubric(assignment.rubric_id) if assignment.rubric_id else None
        if document_ids is None:
            document_ids = [
                doc.id for doc in self.list_documents(bundle.course_id) if doc.assignment_id in (None, assignment.id)
            ]

        version = BundleVersion(
            id=uuid4().hex,
            bundle_id=bundle.id,
            version=len(self.store.set_members(f"bundle_versions:{bundle.id}")) + 1,
            course_id=bundle.course_id,
            assignment=assignment,
            rubric=rubric,
            document_ids=document_ids,
            evaluation_guidance=evaluation_guidance,
        )
        self._put("bundle_version", version.id, version)
        self.store.add_to_set(f"bundle_versions:{bundle.id}", version.id)
        bundle.latest_version_id = version.id
        self._put("bundle", bundle.id, bundle)
        return version

    def get_bundle_version(self, version_id: str) -> BundleVersion | None:
        return self._load("bundle_version", version_id, BundleVersion)

    def get_grading_context(self, bundle_version_id: str) -> GradingContext | None:
        version = self.get_bundle_version(bundle_version_id)
        if version is None:
            return None

        course = self.get_course(version.course_id)
        criteria = version.rubric.criteria if version.rubric else []
        assignment_summary = f"{version.assignment.name}\n{version.assignment.instructions}".strip()
        documents = [self.get_document(doc_id) for doc_id in version.document_ids]
        document_context = "\n\n".join(
            f"[Document: {doc.name}]\n{doc.content[:DOCUMENT_EXCERPT_CHARS]}" for doc in documents if doc is not None
        )
        return GradingContext(
            bundle_version_id=version.id,
            course_id=version.course_id,
            assignment_id=version.assignment.id,
            criteria=list(criteria),
            grading_scale=version.rubric.grading_scale if version.rubric else None,
            rubric_text=format_rubric(criteria),
            assignment_summary=assignment_summary,
            document_ids=list(version.document_ids),
            document_context=document_context,
            course_summary=summarize_course(course) if course else "",
            evaluation_guidance=version.evaluation_guidance,
        )
