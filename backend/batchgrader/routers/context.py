"""Course context endpoints: courses, rubrics, assignments, documents and bundles."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from batchgrader.context_store import ContextNotFoundError, ContextStore, GradingContext
from batchgrader.deps import get_context_store
from batchgrader.models import Assignment, Bundle, BundleVersion, Course, CourseDocument, Rubric
from batchgrader.schemas import (
    AssignmentCreate,
    BundleCreate,
    BundleVersionCreate,
    CourseCreate,
    DocumentCreate,
    RubricCreate,
)

router = APIRouter(prefix="/context", tags=["context"])


@router.post("/courses", response_model=Course, status_code=status.HTTP_201_CREATED)
def create_course(payload: CourseCreate, store: ContextStore = Depends(get_context_store)) -> Course:
    try:
        return store.create_course(**payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/courses", response_model=list[Course])
def list_courses(store: ContextStore = Depends(get_context_store)) -> list[Course]:
    return store.list_courses()


@router.post("/rubrics", response_model=Rubric, status_code=status.HTTP_201_CREATED)
def create_rubric(payload: RubricCreate, store: ContextStore = Depends(get_context_store)) -> Rubric:
    return store.create_rubric(payload.name, payload.criteria, payload.grading_scale)


@router.post("/assignments", response_model=Assignment, status_code=status.HTTP_201_CREATED)
def create_assignment(payload: AssignmentCreate, store: ContextStore = Depends(get_context_store)) -> Assignment:
    try:
        return store.create_assignment(payload.course_id, payload.name, payload.instructions, payload.rubric_id)
    except ContextNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post("/documents", response_model=CourseDocument, status_code=status.HTTP_201_CREATED)
def add_document(payload: DocumentCreate, store: ContextStore = Depends(get_context_store)) -> CourseDocument:
    try:
        return store.add_document(
            payload.course_id,
            payload.name,
            payload.content,
            document_type=payload.document_type,
            assignment_id=payload.assignment_id,
        )
    except ContextNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get("/courses/{course_id}/documents", response_model=list[CourseDocument])
def list_documents(course_id: str, store: ContextStore = Depends(get_context_store)) -> list[CourseDocument]:
    return store.list_documents(course_id)


@router.delete("/documents/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_document(document_id: str, store: ContextStore = Depends(get_context_store)) -> None:
    if not store.delete_document(document_id):
        raise HTTPException(status_code=404, detail="Document not found")


@router.post("/bundles", response_model=Bundle, status_code=status.HTTP_201_CREATED)
def create_bundle(payload: BundleCreate, store: ContextStore = Depends(get_context_store)) -> Bundle:
    try:
        return store.create_bundle(payload.course_id, payload.assignment_id, payload.name)
    except ContextNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post("/bundles/{bundle_id}/versions", response_model=BundleVersion, status_code=status.HTTP_201_CREATED)
def create_bundle_version(
    bundle_id: str,
    payload: BundleVersionCreate,
    store: ContextStore = Depends(get_context_store),
) -> BundleVersion:
    try:
        return store.create_bundle_version(
            bundle_id,
            document_ids=payload.document_ids,
            evaluation_guidance=payload.evaluation_guidance,
        )
    except ContextNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get("/bundle-versions/{version_id}/grading-context", response_model=None)
def get_grading_context(version_id: str, store: ContextStore = Depends(get_context_store)) -> GradingContext:
    context = store.get_grading_context(version_id)
    if context is None:
        raise HTTPException(status_code=404, detail="Bundle version not found")
    return context
