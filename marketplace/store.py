import json
import os
import uuid
from datetime import datetime, timedelta

from sqlalchemy import Boolean, Column, DateTime, Float, String, Text, create_engine, event, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker

from .utils import StorageError, ValidationError, get_logger, handle_errors

logger = get_logger(__name__)
Base = declarative_base()

PROJECT_TYPES = ("Elementor", "Graphic Design", "Video")
PROJECT_STATUSES = ("pending", "approved", "rejected")

# update_project로 변경 가능한 필드 (id/user_id/created_at/funded_amount 제외)
_UPDATABLE_PROJECT_FIELDS = {
    "title",
    "description",
    "project_type",
    "price",
    "is_subscription",
    "interval",
    "deadline",
    "google_drive_link",
    "status",
    "rejection_reason",
    "gumroad_link",
}


def _iso(value):
    return value.isoformat() if value else None


class Project(Base):
    """크리에이터가 제출한 프로젝트"""

    __tablename__ = "projects"
    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    project_type = Column(String, nullable=False)  # Elementor | Graphic Design | Video
    price = Column(Float, nullable=False)
    is_subscription = Column(Boolean, default=False)
    interval = Column(String)  # month | year
    deadline = Column(String)
    google_drive_link = Column(String)
    status = Column(String, default="pending", index=True)  # pending | approved | rejected
    rejection_reason = Column(Text)
    gumroad_link = Column(String)  # 검증된 Gumroad 상품 URL만 저장
    funded_amount = Column(Float, nullable=False, default=0.0)
    user_id = Column(String, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "project_type": self.project_type,
            "price": self.price,
            "is_subscription": bool(self.is_subscription),
            "interval": self.interval,
            "deadline": self.deadline,
            "google_drive_link": self.google_drive_link,
            "status": self.status,
            "rejection_reason": self.rejection_reason,
            "gumroad_link": self.gumroad_link,
            "funded_amount": self.funded_amount or 0.0,
            "user_id": self.user_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Conversion(Base):
    """오퍼월 전환 이벤트. id = provider:transaction_id (멱등성 키)"""

    __tablename__ = "offer_conversions"
    id = Column(String, primary_key=True)
    provider = Column(String, nullable=False)
    transaction_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    project_id = Column(String, index=True)
    payout = Column(Float, nullable=False, default=0.0)
    raw_params_json = Column(Text)
    created_at = Column(DateTime, default=datetime.now)

    def to_dict(self):
        return {
            "id": self.id,
            "provider": self.provider,
            "transaction_id": self.transaction_id,
            "user_id": self.user_id,
            "project_id": self.project_id,
            "payout": self.payout,
            "raw_params": json.loads(self.raw_params_json) if self.raw_params_json else {},
            "created_at": _iso(self.created_at),
        }


class GumroadCredential(Base):
    """사용자별 Gumroad 로그인 정보 (평문 저장 - 암호화 미적용)"""

    __tablename__ = "gumroad_credentials"
    user_id = Column(String, primary_key=True)
    email = Column(String, nullable=False)
    password = Column(String, nullable=False)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "email": self.email,
            "password": self.password,
            "updated_at": _iso(self.updated_at),
        }


class PublishLease(Base):
    """프로젝트별 게시 작업 점유 기록 (동시 게시 방지)"""

    __tablename__ = "publish_leases"
    project_id = Column(String, primary_key=True)
    holder = Column(String, nullable=False)
    expires_at = Column(DateTime, nullable=False)


class MarketplaceStore:
    """프로젝트/전환/자격증명/리스 레코드를 관리하는 저장소"""

    def __init__(self, database_url):
        connect_args = {}
        if database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = 30
        self.engine = create_engine(database_url, connect_args=connect_args)
        if database_url.startswith("sqlite"):
            # 파일 DB의 상위 디렉토리가 없으면 생성
            db_dir = os.path.dirname(self.engine.url.database or "")
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
            event.listen(self.engine, "connect", _enable_sqlite_wal)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.info(f"MarketplaceStore 초기화 완료. 데이터베이스: {self.engine.url.render_as_string(hide_password=True)}")

    def get_session(self):
        return self.Session()

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    @handle_errors(stage="Project Store", error_class=StorageError)
    def create_project(self, user_id: str, fields: dict, project_id: str = None):
        """새 프로젝트를 pending 상태로 기록합니다."""
        session = self.get_session()
        try:
            project = Project(
                id=project_id or uuid.uuid4().hex,
                title=fields["title"],
                description=fields["description"],
                project_type=fields["project_type"],
                price=float(fields["price"]),
                is_subscription=bool(fields.get("is_subscription", False)),
                interval=fields.get("interval"),
                deadline=fields.get("deadline"),
                google_drive_link=fields.get("google_drive_link"),
                status=fields.get("status", "pending"),
                user_id=user_id,
                funded_amount=0.0,
            )
            session.add(project)
            session.commit()
            logger.info(f"프로젝트 저장 완료 - ID: {project.id}, 제목: {project.title}")
            return project.to_dict()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @handle_errors(stage="Project Store", error_class=StorageError)
    def get_project(self, project_id: str):
        session = self.get_session()
        try:
            project = session.query(Project).filter_by(id=project_id).first()
            return project.to_dict() if project else None
        finally:
            session.close()

    @handle_errors(stage="Project Store", error_class=StorageError)
    def list_projects(self, user_id: str = None, status: str = None, limit: int = 100):
        session = self.get_session()
        try:
            query = session.query(Project)
            if user_id:
                query = query.filter_by(user_id=user_id)
            if status:
                query = query.filter_by(status=status)
            projects = query.order_by(Project.created_at.desc()).limit(limit).all()
            return [p.to_dict() for p in projects]
        finally:
            session.close()

    @handle_errors(stage="Project Store", error_class=StorageError)
    def update_project(self, project_id: str, **fields):
        """지정한 필드만 갱신합니다 (문서 전체 덮어쓰기 아님). 갱신된 행이 없으면 False."""
        unknown = set(fields) - _UPDATABLE_PROJECT_FIELDS
        if unknown:
            raise ValidationError(f"갱신할 수 없는 필드: {sorted(unknown)}", stage="Project Store", project_id=project_id)
        session = self.get_session()
        try:
            values = dict(fields)
            values["updated_at"] = datetime.now()
            updated = session.query(Project).filter_by(id=project_id).update(values)
            session.commit()
            if updated:
                logger.info(f"프로젝트 갱신 - ID: {project_id}, 필드: {sorted(fields)}")
            return bool(updated)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @handle_errors(stage="Project Store", error_class=StorageError)
    def increment_funded_amount(self, project_id: str, amount: float):
        """DB 측 원자적 덧셈으로 funded_amount를 증가시킵니다 (read-modify-write 아님)."""
        session = self.get_session()
        try:
            updated = (
                session.query(Project)
                .filter_by(id=project_id)
                .update(
                    {
                        Project.funded_amount: func.coalesce(Project.funded_amount, 0.0) + float(amount),
                        Project.updated_at: datetime.now(),
                    },
                    synchronize_session=False,
                )
            )
            session.commit()
            return bool(updated)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @handle_errors(stage="Project Store", error_class=StorageError)
    def delete_project(self, project_id: str):
        session = self.get_session()
        try:
            deleted = session.query(Project).filter_by(id=project_id).delete()
            session.query(PublishLease).filter_by(project_id=project_id).delete()
            session.commit()
            if deleted:
                logger.info(f"프로젝트 삭제 완료 - ID: {project_id}")
            return bool(deleted)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Conversions
    # ------------------------------------------------------------------

    @handle_errors(stage="Conversion Store", error_class=StorageError)
    def get_conversion(self, conversion_id: str):
        session = self.get_session()
        try:
            conversion = session.query(Conversion).filter_by(id=conversion_id).first()
            return conversion.to_dict() if conversion else None
        finally:
            session.close()

    @handle_errors(stage="Conversion Store", error_class=StorageError)
    def create_conversion_if_absent(self, conversion_id: str, data: dict):
        """같은 키가 없을 때만 기록합니다. 새로 기록했으면 True, 이미 있으면 False."""
        session = self.get_session()
        try:
            session.add(
                Conversion(
                    id=conversion_id,
                    provider=data["provider"],
                    transaction_id=data["transaction_id"],
                    user_id=data["user_id"],
                    project_id=data.get("project_id"),
                    payout=float(data.get("payout") or 0.0),
                    raw_params_json=json.dumps(data.get("raw_params") or {}, ensure_ascii=False),
                )
            )
            session.commit()
            return True
        except IntegrityError:
            session.rollback()
            return False
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @handle_errors(stage="Conversion Store", error_class=StorageError)
    def list_conversions(self, project_id: str = None, user_id: str = None):
        session = self.get_session()
        try:
            query = session.query(Conversion)
            if project_id:
                query = query.filter_by(project_id=project_id)
            if user_id:
                query = query.filter_by(user_id=user_id)
            return [c.to_dict() for c in query.order_by(Conversion.created_at).all()]
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Gumroad credentials
    # ------------------------------------------------------------------

    @handle_errors(stage="Credential Store", error_class=StorageError)
    def set_credentials(self, user_id: str, email: str, password: str):
        session = self.get_session()
        try:
            record = session.query(GumroadCredential).filter_by(user_id=user_id).first()
            if record:
                record.email = email
                record.password = password
                record.updated_at = datetime.now()
            else:
                session.add(GumroadCredential(user_id=user_id, email=email, password=password))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @handle_errors(stage="Credential Store", error_class=StorageError)
    def get_credentials(self, user_id: str):
        session = self.get_session()
        try:
            record = session.query(GumroadCredential).filter_by(user_id=user_id).first()
            return record.to_dict() if record else None
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Publish leases
    # ------------------------------------------------------------------

    @handle_errors(stage="Lease Store", error_class=StorageError)
    def acquire_lease(self, project_id: str, ttl_seconds: int):
        """리스를 획득하면 holder 토큰을, 다른 작업이 점유 중이면 None을 반환합니다."""
        holder = uuid.uuid4().hex
        now = datetime.now()
        expires_at = now + timedelta(seconds=ttl_seconds)
        session = self.get_session()
        try:
            session.add(PublishLease(project_id=project_id, holder=holder, expires_at=expires_at))
            session.commit()
            return holder
        except IntegrityError:
            session.rollback()
            # 만료된 리스만 조건부로 인수
            taken = (
                session.query(PublishLease)
                .filter(PublishLease.project_id == project_id, PublishLease.expires_at < now)
                .update({"holder": holder, "expires_at": expires_at}, synchronize_session=False)
            )
            session.commit()
            if taken:
                logger.warning(f"만료된 게시 리스 인수 - 프로젝트 ID: {project_id}")
                return holder
            return None
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @handle_errors(stage="Lease Store", error_class=StorageError)
    def release_lease(self, project_id: str, holder: str):
        session = self.get_session()
        try:
            released = session.query(PublishLease).filter_by(project_id=project_id, holder=holder).delete()
            session.commit()
            return bool(released)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def _enable_sqlite_wal(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
    finally:
        cursor.close()
