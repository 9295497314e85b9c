"""Presigned URL schemas."""

from __future__ import annotations

from typing import Dict

from pydantic import BaseModel, Field


class PresignUploadRequest(BaseModel):
    filename: str = Field(..., min_length=1, max_length=255, description="Original file name.")
    content_type: str = Field(..., min_length=1, max_length=255, description="MIME type of the upload.")
    size_bytes: int = Field(..., ge=0, description="Size of the object to be uploaded.")


class PresignUploadResponse(BaseModel):
    key: str
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    expires_in: int


class PresignDownloadRequest(BaseModel):
    key: str = Field(..., min_length=1, description="Object key returned by an earlier upload.")


class PresignDownloadResponse(BaseModel):
    url: str
    expires_in: int
