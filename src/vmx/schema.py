"""ORM mappings for the state store tables.

The tables themselves are created and evolved by vmx.migrations; these
mappings must match the schema at the latest migration version.
"""

from datetime import UTC, datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class MachineRow(Base):
    __tablename__ = "virtual_machines"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    bridge: Mapped[str | None] = mapped_column(String, nullable=True)
    mac_address: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    memory: Mapped[str] = mapped_column(String, nullable=False)
    cpus: Mapped[int] = mapped_column(Integer, nullable=False)
    cpu: Mapped[str] = mapped_column(String, nullable=False)
    disk_size: Mapped[str] = mapped_column(String, nullable=False)
    drive_path: Mapped[str | None] = mapped_column(String, nullable=True)
    version: Mapped[str] = mapped_column(String, nullable=False)
    disk_format: Mapped[str | None] = mapped_column(String, nullable=True)
    iso_path: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False)
    pid: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    port_forward: Mapped[str | None] = mapped_column(String, nullable=True)  # "8080:80,2222:22"
    volume: Mapped[str | None] = mapped_column(String, nullable=True)  # volume name


class ImageRow(Base):
    __tablename__ = "images"
    __table_args__ = (UniqueConstraint("repository", "tag", name="uq_images_repository_tag"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    repository: Mapped[str] = mapped_column(String, nullable=False)
    tag: Mapped[str] = mapped_column(String, nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False)  # bytes on disk
    path: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    format: Mapped[str] = mapped_column(String, nullable=False, default="qcow2")
    digest: Mapped[str | None] = mapped_column(String, nullable=True, index=True)


class VolumeRow(Base):
    __tablename__ = "volumes"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    base_image_id: Mapped[str] = mapped_column(
        String, ForeignKey("images.id", ondelete="CASCADE"), nullable=False
    )
    path: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    size: Mapped[str | None] = mapped_column(String, nullable=True)
