# sketchshift/schemas/conversion.py
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional


class ScriptConversionRequest(BaseModel):
    """Body POSTed to the PDE -> JavaScript conversion function."""

    processingId: int = Field(..., description="Job id, 0 for previews")
    pdeContent: str
    fileName: str
    originalName: str = ""
    canvasId: str = ""
    isPreview: bool = False


class ScriptConversionResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    success: bool = False
    message: str = ""
    processingId: Optional[int] = None
    jsContent: str = ""


class ImageConversionRequest(BaseModel):
    """Body POSTed to the image -> WebP conversion function."""

    processingId: int
    imageData: str = Field(..., description="Base64 encoded original image")
    fileName: str
    originalName: str = ""
    canvasId: str = ""
    isPreview: bool = False


class ImageConversionResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    success: bool = False
    message: str = ""
    processingId: Optional[int] = None

    # Base64 encoded WebP
    imageDerivedData: str = ""

    originalSize: int = 0
    derivedSize: int = 0
    compressionRatio: float = 0.0
    width: int = 0
    height: int = 0


class BatchMessage(BaseModel):
    type: str = "batch_conversion"
    kind: str
    batchSize: int
    timestamp: str
