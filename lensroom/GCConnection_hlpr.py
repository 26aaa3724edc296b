import os
import logging
from typing import Callable

from google.cloud import storage, secretmanager
from google.oauth2 import service_account
from google.auth import default as google_auth_default

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session

from lensroom.entities import Base
from lensroom.errors import MissingConfigError

logger = logging.getLogger("lensroom_infer")


class GCConnection:
    """
    Lazily-built handles to the durable collaborators: the Postgres database
    (ledger + generation records) and the GCS bucket (assets).

    Nothing touches the network in __init__; missing configuration surfaces as
    MissingConfigError on first use so the degraded-mode guard can classify it.
    """

    def __init__(self) -> None:
        # DATABASE_URL wins; otherwise the URL is assembled from DB_* (password may live in Secret Manager)
        self.DATABASE_URL = os.getenv("DATABASE_URL", "")
        self.PROJECT_ID   = os.getenv("PROJECT_ID", "") or os.getenv("GOOGLE_CLOUD_PROJECT", "")
        self.BUCKET_NAME  = os.getenv("GCS_BUCKET_NAME", "")
        self.DB_HOST      = os.getenv("DB_HOST", "")
        self.DB_PORT      = int(os.getenv("DB_PORT", "5432"))
        self.DB_NAME      = os.getenv("DB_NAME", "")
        self.DB_USER      = os.getenv("DB_USER", "")
        self.DB_PASSWORD  = os.getenv("DB_PASSWORD", "")
        self.DB_SECRET_ID = os.getenv("DB_SECRET_ID", "")

        self._sessionmaker = None
        self._storage_client = None
        self._creds = None

    # -------- GCP auth / creds --------
    def _build_creds(self):
        if self._creds is not None:
            return self._creds
        key_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
        scopes = ["https://www.googleapis.com/auth/cloud-platform"]
        if key_path and os.path.exists(key_path):
            self._creds = service_account.Credentials.from_service_account_file(key_path, scopes=scopes)
        else:
            self._creds, _ = google_auth_default(scopes=scopes)
        return self._creds

    # -------- DB password (Secret Manager) --------
    def _get_db_password_lazy(self) -> str:
        if self.DB_PASSWORD:
            return self.DB_PASSWORD
        if self.DB_SECRET_ID and self.PROJECT_ID:
            client = secretmanager.SecretManagerServiceClient(credentials=self._build_creds())
            name = client.secret_version_path(self.PROJECT_ID, self.DB_SECRET_ID, "latest")
            resp = client.access_secret_version(request={"name": name})
            self.DB_PASSWORD = resp.payload.data.decode("utf-8")
            return self.DB_PASSWORD
        raise MissingConfigError("No DB_PASSWORD and no Secret Manager configured")

    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        if not (self.DB_HOST and self.DB_NAME and self.DB_USER):
            raise MissingConfigError("Database environment variables not configured (DATABASE_URL or DB_HOST/DB_NAME/DB_USER)")
        pw = self._get_db_password_lazy()
        return f"postgresql+pg8000://{self.DB_USER}:{pw}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    # -------- SQLAlchemy Session factory --------
    def build_db_session_factory(self) -> Callable[[], Session]:
        """
        Returns a zero-arg factory. The engine is created on the first call of
        the factory, not here, so an unconfigured database fails per-operation.
        """

        def _factory() -> Session:
            if self._sessionmaker is None:
                url = self.database_url()
                connect_args = {"timeout": 10} if url.startswith("postgresql+pg8000") else {}
                engine = create_engine(url, future=True, pool_pre_ping=True, connect_args=connect_args)
                logger.info("[DB] Engine created for %s", engine.url.render_as_string(hide_password=True))
                self._sessionmaker = sessionmaker(
                    bind=engine,
                    autoflush=False,
                    autocommit=False,
                    future=True,
                )
            return self._sessionmaker()

        return _factory

    def create_schema(self) -> None:
        session = self.build_db_session_factory()()
        try:
            Base.metadata.create_all(session.get_bind())
        finally:
            session.close()

    def ping_db(self) -> None:
        session = self.build_db_session_factory()()
        try:
            session.execute(text("SELECT 1"))
        finally:
            session.close()

    # -------- Storage helpers --------
    @property
    def storage_client(self) -> storage.Client:
        if self._storage_client is None:
            self._storage_client = storage.Client(project=self.PROJECT_ID or None, credentials=self._build_creds())
        return self._storage_client

    def upload_to_gcs(self, blob_path: str, data: bytes, content_type: str) -> tuple[str, str]:
        """
        Overwrites any existing object at blob_path. Returns (gs_url, https_url).
        """
        if not self.BUCKET_NAME:
            raise MissingConfigError("GCS_BUCKET_NAME not configured")
        bucket = self.storage_client.bucket(self.BUCKET_NAME)
        blob = bucket.blob(blob_path)
        blob.upload_from_string(data, content_type=content_type)
        return (
            f"gs://{self.BUCKET_NAME}/{blob_path}",
            f"https://storage.googleapis.com/{self.BUCKET_NAME}/{blob_path}",
        )
