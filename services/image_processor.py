import cv2
import math
import numpy as np
from typing import Optional
import logging
from io import BytesIO
from PIL import Image
from models import EdgeInsets, FilterConfig, Orientation, RawImage
from services.exceptions import ImageProcessingError

logger = logging.getLogger(__name__)

# Pixel formats the filter chain knows how to read
SUPPORTED_MODES = {"RGB", "RGBA", "L", "LA", "P"}

# Rec. 709 luma weights
LUMA_WEIGHTS = np.array([0.2125, 0.7154, 0.0721], dtype=np.float32)

EXIF_ORIENTATION_TAG = 0x0112

# Same mapping as ImageOps.exif_transpose. RawImage carries the orientation
# as its own field and bitmaps do not keep their EXIF block, so the
# transpose is applied directly.
TRANSPOSE_METHODS = {
    Orientation.UP_MIRRORED: Image.Transpose.FLIP_LEFT_RIGHT,
    Orientation.DOWN: Image.Transpose.ROTATE_180,
    Orientation.DOWN_MIRRORED: Image.Transpose.FLIP_TOP_BOTTOM,
    Orientation.LEFT_MIRRORED: Image.Transpose.TRANSPOSE,
    Orientation.RIGHT: Image.Transpose.ROTATE_270,
    Orientation.RIGHT_MIRRORED: Image.Transpose.TRANSVERSE,
    Orientation.LEFT: Image.Transpose.ROTATE_90,
}


class ReceiptImageProcessor:
    """
    Prepares receipt photos for text recognition.

    Every operation is a pure function of its arguments, so one processor can
    be shared between concurrent callers.
    """

    def __init__(self, config: Optional[FilterConfig] = None):
        self.config = config or FilterConfig()

    def preprocess(
        self, image: RawImage, config: Optional[FilterConfig] = None
    ) -> RawImage:
        """
        Turn a color photo into a high-contrast image for thermal-paper text

        Stages run in order: color controls, unsharp mask, exposure. When a
        stage cannot run, the output of the last successful stage is kept; when
        none can run the input is returned untouched. Never raises.

        Args:
            image: Captured page
            config: Filter parameters, defaults to the processor's config

        Returns:
            Filtered page with the same size, orientation and scale
        """
        config = config or self.config
        stages = [
            ("color_controls", self._apply_color_controls),
            ("unsharp_mask", self._apply_unsharp_mask),
            ("exposure_adjust", self._apply_exposure),
        ]

        try:
            pixels = self._to_float_array(image.bitmap)
        except Exception as e:
            logger.warning(f"Skipping preprocessing: {str(e)}")
            return image

        completed = 0
        for name, stage in stages:
            try:
                pixels = stage(pixels, config)
            except Exception as e:
                logger.warning(f"Filter stage {name} failed, keeping previous output: {e}")
                break
            completed += 1

        if completed == 0:
            return image

        try:
            bitmap = self._to_bitmap(pixels)
        except Exception as e:
            logger.warning(f"Could not render filtered image: {str(e)}")
            return image

        logger.debug(f"Preprocessed {image.width}x{image.height} image ({completed} stages)")
        return RawImage(bitmap=bitmap, orientation=image.orientation, scale=image.scale)

    def _to_float_array(self, bitmap: Image.Image) -> np.ndarray:
        """Read a bitmap into float pixels in [0, 1]"""
        if bitmap.mode not in SUPPORTED_MODES:
            raise ImageProcessingError(
                "Unsupported pixel format", f"Mode {bitmap.mode} cannot be filtered"
            )
        if bitmap.width == 0 or bitmap.height == 0:
            raise ImageProcessingError("Empty image", "Image has no pixels")

        if bitmap.mode in ("RGBA", "P"):
            bitmap = bitmap.convert("RGB")
        elif bitmap.mode == "LA":
            bitmap = bitmap.convert("L")

        return np.asarray(bitmap, dtype=np.float32) / 255.0

    def _to_bitmap(self, pixels: np.ndarray) -> Image.Image:
        """Render float pixels back to an 8-bit bitmap"""
        data = np.rint(np.clip(pixels, 0.0, 1.0) * 255.0).astype(np.uint8)
        return Image.fromarray(data)

    def _apply_color_controls(
        self, pixels: np.ndarray, config: FilterConfig
    ) -> np.ndarray:
        """Saturation, then brightness offset, then contrast around mid-gray"""
        if pixels.ndim == 3:
            luma = pixels @ LUMA_WEIGHTS
            luma = luma[..., np.newaxis]
            pixels = luma + config.saturation * (pixels - luma)

        pixels = pixels + config.brightness
        pixels = (pixels - 0.5) * config.contrast + 0.5
        return np.clip(pixels, 0.0, 1.0).astype(np.float32)

    def _apply_unsharp_mask(
        self, pixels: np.ndarray, config: FilterConfig
    ) -> np.ndarray:
        """Sharpen text edges"""
        if config.sharpen_radius <= 0 or config.sharpen_intensity == 0:
            return pixels

        blurred = cv2.GaussianBlur(
            pixels,
            (0, 0),
            sigmaX=config.sharpen_radius,
            borderType=cv2.BORDER_REPLICATE,
        )
        sharpened = cv2.addWeighted(
            pixels, 1.0 + config.sharpen_intensity, blurred, -config.sharpen_intensity, 0
        )
        return np.clip(sharpened, 0.0, 1.0).astype(np.float32)

    def _apply_exposure(self, pixels: np.ndarray, config: FilterConfig) -> np.ndarray:
        """Scale intensities by 2^EV"""
        return np.clip(pixels * (2.0 ** config.exposure_ev), 0.0, 1.0).astype(
            np.float32
        )

    def crop_to_content(
        self, image: RawImage, insets: Optional[EdgeInsets] = None
    ) -> Optional[RawImage]:
        """
        Trim margins from a page

        Args:
            image: Captured page
            insets: Pixels to remove from each edge

        Returns:
            Cropped page, or None when the remaining rectangle is empty
        """
        insets = insets or EdgeInsets()
        width, height = image.size

        left = insets.left
        top = insets.top
        right = width - insets.right
        bottom = height - insets.bottom

        if right - left <= 0 or bottom - top <= 0:
            logger.debug(f"Degenerate crop rectangle for {width}x{height} image")
            return None

        # Clip to the bitmap, rounding outward to whole pixels
        box = (
            max(0, math.floor(left)),
            max(0, math.floor(top)),
            min(width, math.ceil(right)),
            min(height, math.ceil(bottom)),
        )
        if box[2] <= box[0] or box[3] <= box[1]:
            return None

        return RawImage(
            bitmap=image.bitmap.crop(box),
            orientation=image.orientation,
            scale=image.scale,
        )

    def normalize_orientation(self, image: RawImage) -> RawImage:
        """Re-render a page upright; upright pages are returned as-is"""
        if image.orientation == Orientation.UP:
            return image

        try:
            bitmap = image.bitmap.transpose(TRANSPOSE_METHODS[image.orientation])
        except Exception as e:
            logger.warning(f"Failed to normalize orientation: {str(e)}")
            return image

        return RawImage(bitmap=bitmap, orientation=Orientation.UP, scale=image.scale)

    def load_image(self, image_bytes: bytes) -> RawImage:
        """
        Decode uploaded bytes into a page

        The EXIF orientation is kept as the page's orientation tag; pixels are
        left as stored.

        Args:
            image_bytes: Encoded image (JPEG, PNG, ...)

        Returns:
            Decoded page
        """
        try:
            # Use PIL for better format support
            pil_image = Image.open(BytesIO(image_bytes))
            pil_image.load()
            tag = pil_image.getexif().get(EXIF_ORIENTATION_TAG, Orientation.UP)

            if pil_image.mode not in SUPPORTED_MODES:
                pil_image = pil_image.convert("RGB")

        except Exception as e:
            raise ImageProcessingError(
                "Invalid image format", f"Could not decode image: {str(e)}"
            )

        try:
            orientation = Orientation(tag)
        except ValueError:
            logger.warning(f"Ignoring invalid EXIF orientation {tag}")
            orientation = Orientation.UP

        return RawImage(bitmap=pil_image, orientation=orientation)
