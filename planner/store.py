"""Entity store: the single writer for users, documents, analyses, activities
and contact submissions.

Invariants are enforced here rather than by callers:

- ids are assigned monotonically per entity kind and never reused;
- a document has at most one analysis (:class:`DuplicateAnalysis` otherwise),
  which also makes racing analyses of one document safe;
- usernames are unique and matched exactly (case-sensitive);
- activity and contact-submission listings are most recent first.

Callers get pydantic copies; mutating them does not touch stored state.
:class:`MemoryStore` is the reference implementation, :class:`SqlStore` the
durable one over SQLAlchemy.
"""
from __future__ import annotations

import abc
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any, TypeVar

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from planner.db import session_scope
from planner.errors import DuplicateAnalysis, DuplicateUser
from planner.models import Activity, Analysis, ContactSubmission, Document, User
from planner.schemas import (
    ActivityOut,
    AnalysisOut,
    ContactSubmissionOut,
    DocumentOut,
    Scorecard,
    UserRecord,
)

log = logging.getLogger(__name__)

DOCUMENT_PATCH_FIELDS = ("title", "content_type", "content", "page_count", "score")

_R = TypeVar("_R", bound=BaseModel)


def _now() -> datetime:
    return datetime.now(UTC)


def _check_patch(patch: dict[str, Any]) -> None:
    bad = sorted(set(patch) - set(DOCUMENT_PATCH_FIELDS))
    if bad:
        raise ValueError(f"Cannot update document field(s): {', '.join(bad)}")


def _analysis_fields(scorecard: Scorecard) -> dict[str, Any]:
    return scorecard.model_dump()


class EntityStore(abc.ABC):
    """Storage-agnostic persistence interface."""

    # Users
    @abc.abstractmethod
    def create_user(self, username: str, password: str, name: str,
                    user_type: str = "startup", avatar_url: str | None = None) -> UserRecord: ...

    @abc.abstractmethod
    def get_user(self, user_id: int) -> UserRecord | None: ...

    @abc.abstractmethod
    def get_user_by_username(self, username: str) -> UserRecord | None: ...

    # Documents
    @abc.abstractmethod
    def create_document(self, user_id: int, title: str, content_type: str, content: str = "",
                        page_count: int | None = None, score: int | None = None) -> DocumentOut: ...

    @abc.abstractmethod
    def get_document(self, document_id: int) -> DocumentOut | None: ...

    @abc.abstractmethod
    def get_documents_by_user_id(self, user_id: int) -> list[DocumentOut]: ...

    @abc.abstractmethod
    def update_document(self, document_id: int, **patch: Any) -> DocumentOut | None:
        """Apply *patch* to a document; ``None`` if it does not exist."""

    # Analyses
    @abc.abstractmethod
    def create_analysis(self, document_id: int, scorecard: Scorecard, provider: str = "") -> AnalysisOut:
        """Store the analysis of a document. Raises DuplicateAnalysis on a second call."""

    @abc.abstractmethod
    def get_analysis(self, analysis_id: int) -> AnalysisOut | None: ...

    @abc.abstractmethod
    def get_analysis_by_document_id(self, document_id: int) -> AnalysisOut | None: ...

    # Activities
    @abc.abstractmethod
    def create_activity(self, user_id: int, document_id: int, activity_type: str,
                        details: dict[str, Any] | None = None) -> ActivityOut: ...

    @abc.abstractmethod
    def get_activities(self, user_id: int, limit: int = 10) -> list[ActivityOut]: ...

    # Contact submissions
    @abc.abstractmethod
    def create_contact_submission(self, name: str, email: str, company: str = "", message: str = "",
                                  extra: dict[str, Any] | None = None) -> ContactSubmissionOut: ...

    @abc.abstractmethod
    def get_contact_submissions(self, limit: int | None = None) -> list[ContactSubmissionOut]: ...

    @abc.abstractmethod
    def atomic(self) -> Any:
        """Context manager: operations inside commit together or not at all."""


# ---------------------------------------------------------------------------
# In-memory reference implementation
# ---------------------------------------------------------------------------


class MemoryStore(EntityStore):
    """Maps keyed by id, guarded by one re-entrant lock."""

    _KINDS = ("users", "documents", "analyses", "activities", "contact_submissions")

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tables: dict[str, dict[int, BaseModel]] = {k: {} for k in self._KINDS}
        self._last_id: dict[str, int] = {k: 0 for k in self._KINDS}

    def _next_id(self, kind: str) -> int:
        self._last_id[kind] += 1
        return self._last_id[kind]

    def _insert(self, kind: str, record: _R) -> _R:
        self._tables[kind][record.id] = record  # type: ignore[attr-defined]
        return record.model_copy(deep=True)

    def _get(self, kind: str, entity_id: int) -> Any:
        with self._lock:
            record = self._tables[kind].get(entity_id)
            return record.model_copy(deep=True) if record is not None else None

    @contextmanager
    def atomic(self) -> Iterator[None]:
        # Counters are deliberately not restored: ids handed out inside a
        # failed block stay burned.
        with self._lock:
            snapshot = {k: dict(v) for k, v in self._tables.items()}
            try:
                yield
            except BaseException:
                self._tables = snapshot
                raise

    # Users

    def create_user(self, username, password, name, user_type="startup", avatar_url=None):
        with self._lock:
            if self._find_user(username) is not None:
                raise DuplicateUser(username)
            user = UserRecord(
                id=self._next_id("users"), username=username, password=password, name=name,
                user_type=user_type, avatar_url=avatar_url, created_at=_now(),
            )
            return self._insert("users", user)

    def _find_user(self, username: str) -> UserRecord | None:
        for user in self._tables["users"].values():
            if user.username == username:  # type: ignore[attr-defined]
                return user  # type: ignore[return-value]
        return None

    def get_user(self, user_id):
        return self._get("users", user_id)

    def get_user_by_username(self, username):
        with self._lock:
            user = self._find_user(username)
            return user.model_copy(deep=True) if user is not None else None

    # Documents

    def create_document(self, user_id, title, content_type, content="", page_count=None, score=None):
        with self._lock:
            now = _now()
            doc = DocumentOut(
                id=self._next_id("documents"), user_id=user_id, title=title,
                content_type=content_type, content=content, page_count=page_count,
                score=score, created_at=now, updated_at=now,
            )
            return self._insert("documents", doc)

    def get_document(self, document_id):
        return self._get("documents", document_id)

    def get_documents_by_user_id(self, user_id):
        with self._lock:
            docs = [d for d in self._tables["documents"].values() if d.user_id == user_id]  # type: ignore[attr-defined]
            docs.sort(key=lambda d: (d.created_at, d.id), reverse=True)  # type: ignore[attr-defined]
            return [d.model_copy(deep=True) for d in docs]

    def update_document(self, document_id, **patch):
        _check_patch(patch)
        with self._lock:
            doc = self._tables["documents"].get(document_id)
            if doc is None:
                return None
            updated = doc.model_copy(update={**patch, "updated_at": _now()})
            updated = DocumentOut.model_validate(updated.model_dump())
            self._tables["documents"][document_id] = updated
            return updated.model_copy(deep=True)

    # Analyses

    def create_analysis(self, document_id, scorecard, provider=""):
        with self._lock:
            for existing in self._tables["analyses"].values():
                if existing.document_id == document_id:  # type: ignore[attr-defined]
                    raise DuplicateAnalysis(document_id)
            analysis = AnalysisOut(
                id=self._next_id("analyses"), document_id=document_id, provider=provider,
                created_at=_now(), **_analysis_fields(scorecard),
            )
            return self._insert("analyses", analysis)

    def get_analysis(self, analysis_id):
        return self._get("analyses", analysis_id)

    def get_analysis_by_document_id(self, document_id):
        with self._lock:
            for analysis in self._tables["analyses"].values():
                if analysis.document_id == document_id:  # type: ignore[attr-defined]
                    return analysis.model_copy(deep=True)
        return None

    # Activities

    def create_activity(self, user_id, document_id, activity_type, details=None):
        with self._lock:
            activity = ActivityOut(
                id=self._next_id("activities"), user_id=user_id, document_id=document_id,
                activity_type=activity_type, details=dict(details or {}), created_at=_now(),
            )
            return self._insert("activities", activity)

    def get_activities(self, user_id, limit=10):
        with self._lock:
            items = [a for a in self._tables["activities"].values() if a.user_id == user_id]  # type: ignore[attr-defined]
            items.sort(key=lambda a: (a.created_at, a.id), reverse=True)  # type: ignore[attr-defined]
            return [a.model_copy(deep=True) for a in items[:max(limit, 0)]]

    # Contact submissions

    def create_contact_submission(self, name, email, company="", message="", extra=None):
        with self._lock:
            sub = ContactSubmissionOut(
                id=self._next_id("contact_submissions"), name=name, email=email,
                company=company, message=message, extra=dict(extra or {}), submitted_at=_now(),
            )
            return self._insert("contact_submissions", sub)

    def get_contact_submissions(self, limit=None):
        with self._lock:
            items = list(self._tables["contact_submissions"].values())
            items.sort(key=lambda s: (s.submitted_at, s.id), reverse=True)  # type: ignore[attr-defined]
            if limit is not None:
                items = items[:max(limit, 0)]
            return [s.model_copy(deep=True) for s in items]


# ---------------------------------------------------------------------------
# SQLAlchemy implementation
# ---------------------------------------------------------------------------


class SqlStore(EntityStore):
    """Durable store over a SQLAlchemy session factory.

    Each operation runs in its own transaction unless called inside
    :meth:`atomic`, in which case all operations on this thread share one.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self._factory = session_factory
        self._local = threading.local()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        active: Session | None = getattr(self._local, "session", None)
        if active is not None:
            yield active
            return
        with session_scope(self._factory) as session:
            yield session

    @contextmanager
    def atomic(self) -> Iterator[None]:
        if getattr(self._local, "session", None) is not None:
            yield
            return
        with session_scope(self._factory) as session:
            self._local.session = session
            try:
                yield
            finally:
                self._local.session = None

    # Users

    def create_user(self, username, password, name, user_type="startup", avatar_url=None):
        with self._session() as session:
            exists = session.execute(select(User.id).where(User.username == username)).first()
            if exists:
                raise DuplicateUser(username)
            user = User(username=username, password=password, name=name,
                        user_type=user_type, avatar_url=avatar_url, created_at=_now())
            session.add(user)
            try:
                session.flush()
            except IntegrityError as exc:
                raise DuplicateUser(username) from exc
            return UserRecord.model_validate(user)

    def get_user(self, user_id):
        with self._session() as session:
            user = session.get(User, user_id)
            return UserRecord.model_validate(user) if user else None

    def get_user_by_username(self, username):
        with self._session() as session:
            # Exact match; = on SQLite text columns is case-sensitive (BINARY collation).
            user = session.execute(select(User).where(User.username == username)).scalars().first()
            return UserRecord.model_validate(user) if user else None

    # Documents

    def create_document(self, user_id, title, content_type, content="", page_count=None, score=None):
        with self._session() as session:
            now = _now()
            doc = Document(user_id=user_id, title=title, content_type=content_type, content=content,
                           page_count=page_count, score=score, created_at=now, updated_at=now)
            session.add(doc)
            session.flush()
            log.debug("Document %d created for user %d", doc.id, user_id)
            return DocumentOut.model_validate(doc)

    def get_document(self, document_id):
        with self._session() as session:
            doc = session.get(Document, document_id)
            return DocumentOut.model_validate(doc) if doc else None

    def get_documents_by_user_id(self, user_id):
        with self._session() as session:
            docs = session.execute(
                select(Document).where(Document.user_id == user_id)
                .order_by(Document.created_at.desc(), Document.id.desc())
            ).scalars().all()
            return [DocumentOut.model_validate(d) for d in docs]

    def update_document(self, document_id, **patch):
        _check_patch(patch)
        with self._session() as session:
            doc = session.get(Document, document_id)
            if doc is None:
                return None
            for field, value in patch.items():
                setattr(doc, field, value)
            doc.updated_at = _now()
            session.flush()
            return DocumentOut.model_validate(doc)

    # Analyses

    def create_analysis(self, document_id, scorecard, provider=""):
        with self._session() as session:
            exists = session.execute(
                select(Analysis.id).where(Analysis.document_id == document_id)
            ).first()
            if exists:
                raise DuplicateAnalysis(document_id)
            analysis = Analysis(document_id=document_id, provider=provider, created_at=_now(),
                                **_analysis_fields(scorecard))
            session.add(analysis)
            try:
                session.flush()
            except IntegrityError as exc:
                raise DuplicateAnalysis(document_id) from exc
            return AnalysisOut.model_validate(analysis)

    def get_analysis(self, analysis_id):
        with self._session() as session:
            analysis = session.get(Analysis, analysis_id)
            return AnalysisOut.model_validate(analysis) if analysis else None

    def get_analysis_by_document_id(self, document_id):
        with self._session() as session:
            analysis = session.execute(
                select(Analysis).where(Analysis.document_id == document_id)
            ).scalars().first()
            return AnalysisOut.model_validate(analysis) if analysis else None

    # Activities

    def create_activity(self, user_id, document_id, activity_type, details=None):
        with self._session() as session:
            activity = Activity(user_id=user_id, document_id=document_id, activity_type=activity_type,
                                details=dict(details or {}), created_at=_now())
            session.add(activity)
            session.flush()
            return ActivityOut.model_validate(activity)

    def get_activities(self, user_id, limit=10):
        with self._session() as session:
            rows = session.execute(
                select(Activity).where(Activity.user_id == user_id)
                .order_by(Activity.created_at.desc(), Activity.id.desc())
                .limit(max(limit, 0))
            ).scalars().all()
            return [ActivityOut.model_validate(a) for a in rows]

    # Contact submissions

    def create_contact_submission(self, name, email, company="", message="", extra=None):
        with self._session() as session:
            sub = ContactSubmission(name=name, email=email, company=company, message=message,
                                    extra=dict(extra or {}), submitted_at=_now())
            session.add(sub)
            session.flush()
            return ContactSubmissionOut.model_validate(sub)

    def get_contact_submissions(self, limit=None):
        with self._session() as session:
            query = select(ContactSubmission).order_by(
                ContactSubmission.submitted_at.desc(), ContactSubmission.id.desc(),
            )
            if limit is not None:
                query = query.limit(max(limit, 0))
            return [ContactSubmissionOut.model_validate(s) for s in session.execute(query).scalars().all()]


def build_store(backend: str, session_factory: sessionmaker[Session] | None = None) -> EntityStore:
    if backend == "memory":
        return MemoryStore()
    if session_factory is None:
        raise ValueError("SqlStore needs a session factory")
    return SqlStore(session_factory)
