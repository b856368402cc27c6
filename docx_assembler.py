"""
DOCX assembly - builds the merged output package with python-docx
"""

import io
import os
from typing import Tuple

from docx import Document
from docx.enum.text import WD_PARAGRAPH_ALIGNMENT
from docx.opc.constants import RELATIONSHIP_TYPE as RT
from docx.opc.part import Part
from docx.oxml import OxmlElement
from docx.oxml.ns import qn
from docx.shared import Emu, Inches, Mm
from PIL import Image, ImageOps

# Not the "+xml" main-document type: python-docx loads parts of that type as document XML.
ALT_CHUNK_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document.main"
ALT_CHUNK_PARTNAME_TEMPLATE = "/word/altChunk%d.docx"

DEFAULT_PAGE_SIZE = (Mm(210), Mm(297))  # A4
DEFAULT_MARGIN = Inches(1)

# Formats python-docx can embed as-is.
_EMBEDDABLE_FORMATS = {"PNG", "JPEG", "GIF", "BMP", "TIFF"}
_EXIF_ORIENTATION = 0x0112
_DEFAULT_DPI = 72
_EMU_PER_INCH = 914400


def _image_dpi(image) -> Tuple[float, float]:
    dpi = image.info.get("dpi")
    try:
        horz, vert = float(dpi[0]), float(dpi[1])
    except (TypeError, ValueError, IndexError):
        return _DEFAULT_DPI, _DEFAULT_DPI
    return (horz if horz > 1 else _DEFAULT_DPI), (vert if vert > 1 else _DEFAULT_DPI)


def fit_to_width(native_width: int, native_height: int, max_width: int) -> Tuple[int, int]:
    """Scale down, preserving aspect ratio, so the width fits ``max_width``; never scale up."""
    if native_width <= 0 or native_height <= 0:
        raise ValueError("Image has no drawable area")
    if native_width <= max_width:
        return native_width, native_height
    return max_width, max(1, int(round(native_height * max_width / native_width)))


def load_image_for_docx(image_path: str):
    """
    Decode an image and return (stream, width_emu, height_emu) at its native size.
    Rotated (EXIF) images and formats python-docx cannot read are re-encoded.
    """
    with Image.open(image_path) as image:
        image.load()
        source_format = (image.format or "").upper()
        orientation = image.getexif().get(_EXIF_ORIENTATION, 1)
        horz_dpi, vert_dpi = _image_dpi(image)

        if source_format in _EMBEDDABLE_FORMATS and orientation == 1:
            width_px, height_px = image.size
            with open(image_path, "rb") as handle:
                stream = io.BytesIO(handle.read())
        else:
            upright = ImageOps.exif_transpose(image)
            width_px, height_px = upright.size
            if orientation in (5, 6, 7, 8):
                horz_dpi, vert_dpi = vert_dpi, horz_dpi
            stream = io.BytesIO()
            if source_format == "JPEG" and upright.mode in ("RGB", "L"):
                upright.save(stream, format="JPEG", quality=95)
            else:
                if upright.mode not in ("RGB", "RGBA", "L", "LA", "P", "1"):
                    upright = upright.convert("RGBA")
                upright.save(stream, format="PNG")
            stream.seek(0)

    width_emu = int(round(width_px * _EMU_PER_INCH / horz_dpi))
    height_emu = int(round(height_px * _EMU_PER_INCH / vert_dpi))
    return stream, width_emu, height_emu


class DocxAssembler:
    """Accumulates merged content in one python-docx Document."""

    def __init__(self, page_size=None, margins=None):
        self.document = Document()
        self.segments = 0
        self.page_breaks = 0
        section = self.document.sections[-1]
        section.page_width, section.page_height = page_size or DEFAULT_PAGE_SIZE
        margins = margins or (DEFAULT_MARGIN,) * 4
        section.left_margin, section.right_margin, section.top_margin, section.bottom_margin = margins

    @property
    def printable_width(self) -> int:
        section = self.document.sections[-1]
        return int(section.page_width - section.left_margin - section.right_margin)

    def append_subdocument(self, docx_path: str) -> str:
        """
        Embed a whole .docx as an altChunk part; readers render it in place.

        Returns:
            The relationship id of the embedded part
        """
        with open(docx_path, "rb") as handle:
            blob = handle.read()

        document_part = self.document.part
        partname = document_part.package.next_partname(ALT_CHUNK_PARTNAME_TEMPLATE)
        chunk_part = Part(partname, ALT_CHUNK_CONTENT_TYPE, blob, document_part.package)
        r_id = document_part.relate_to(chunk_part, RT.A_F_CHUNK)

        chunk = OxmlElement("w:altChunk")
        chunk.set(qn("r:id"), r_id)
        self._append_body_element(chunk)
        self.segments += 1
        return r_id

    def append_image(self, image_path: str) -> Tuple[int, int]:
        """Insert an image as a centered run, scaled down to the printable width."""
        stream, native_width, native_height = load_image_for_docx(image_path)
        width, height = fit_to_width(native_width, native_height, self.printable_width)

        paragraph = self.document.add_paragraph()
        paragraph.alignment = WD_PARAGRAPH_ALIGNMENT.CENTER
        paragraph.add_run().add_picture(stream, width=Emu(width), height=Emu(height))
        self.segments += 1
        return width, height

    def append_page_break(self) -> None:
        self.document.add_page_break()
        self.page_breaks += 1

    def _append_body_element(self, element) -> None:
        body = self.document.element.body
        sect_pr = body.sectPr
        if sect_pr is not None:
            sect_pr.addprevious(element)
        else:
            body.append(element)

    def save(self, output_path: str) -> None:
        directory = os.path.dirname(os.path.abspath(output_path))
        os.makedirs(directory, exist_ok=True)
        self.document.save(output_path)
