from __future__ import annotations

import shutil

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from backgrounder import Uploader, mount_uploader, process_in_background, store_in_background


class Base(DeclarativeBase):
    pass


def copy_version(source, destination) -> None:
    shutil.copyfile(source, destination)


class AvatarUploader(Uploader):
    versions = {"thumb": copy_version}


class Photo(Base):
    __tablename__ = "photos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str | None] = mapped_column(String(100), nullable=True)

    avatar_identifier: Mapped[str | None] = mapped_column(String(255), nullable=True)
    avatar_tmp: Mapped[str | None] = mapped_column(String(255), nullable=True)
    avatar_processing: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


mount_uploader(Photo, "avatar", AvatarUploader)
store_in_background(Photo, "avatar")


class Document(Base):
    """No ``attachment_processing`` column."""

    __tablename__ = "documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    attachment_identifier: Mapped[str | None] = mapped_column(String(255), nullable=True)


mount_uploader(Document, "attachment", AvatarUploader)
process_in_background(Document, "attachment")


extension_calls: list[str] = []


def _always_updated(policy, original, entity) -> bool:
    extension_calls.append("updated")
    return True


def _first(policy, original, entity) -> bool:
    extension_calls.append("first")
    return original(entity)


def _second(policy, original, entity) -> bool:
    extension_calls.append("second")
    return original(entity)


def _record_dispatch(policy, original, job) -> None:
    extension_calls.append("dispatch")
    original(job)


class Clip(Base):
    __tablename__ = "clips"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    video: Mapped[str | None] = mapped_column(String(255), nullable=True)
    video_processing: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


mount_uploader(Clip, "upload", AvatarUploader, mount_on="video")
process_in_background(
    Clip,
    "upload",
    "transcode",
    extensions=[
        ("updated", _always_updated),
        ("should_enqueue", _first),
        ("should_enqueue", _second),
        ("dispatch_job", _record_dispatch),
    ],
)
