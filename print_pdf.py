#!/usr/bin/env python3
"""Command-line PDF printer.

Loads a PDF (decrypting it with a password when needed) and sends it to the
system print spooler, optionally picking a printer by partial name, forcing an
orientation, drawing a page border, or rasterizing pages at a fixed DPI first.

Printing approach:
- macOS/Linux: `lp` (CUPS).
- Windows: Ghostscript + mswinpr2 (printing to a specific printer).

Dialog:
- tkinter OK/Cancel confirmation unless -silentPrint is given.

Notes for Windows:
- Ghostscript must be installed and on PATH (gswin64c / gswin32c), or named
  through the PRINT_PDF_GS environment variable.
"""

from __future__ import annotations

import enum
import io
import os
import re
import shutil
import subprocess
import sys
import tempfile
import types
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional, Sequence

from pypdf import PageObject, PasswordType, PdfReader, PdfWriter
from pypdf.errors import WrongPasswordError
from pypdf.generic import DecodedStreamObject, NameObject

PASSWORD = "-password"
SILENT = "-silentPrint"
PRINTER_NAME = "-printerName"
ORIENTATION = "-orientation"
BORDER = "-border"
DPI = "-dpi"

VALUE_FLAGS = frozenset({PASSWORD, PRINTER_NAME, ORIENTATION, DPI})

GS_ENV_VAR = "PRINT_PDF_GS"
BORDER_LINE_WIDTH = 1

USAGE = """Usage: print-pdf [options] <inputfile>

Options:
  -password  <password>                : Password to decrypt document
  -printerName <name>                  : Print to specific printer
  -orientation auto|portrait|landscape : Print using orientation
                                           (default: auto)
  -border                              : Print with border
  -dpi <dpi>                           : Render into intermediate image with
                                           specific dpi and then print
  -silentPrint                         : Print without printer dialog box
"""


class Orientation(enum.Enum):
    """Page orientation used when composing the spooled document."""

    AUTO = "auto"
    LANDSCAPE = "landscape"
    PORTRAIT = "portrait"


ORIENTATIONS = types.MappingProxyType(
    {
        "auto": Orientation.AUTO,
        "landscape": Orientation.LANDSCAPE,
        "portrait": Orientation.PORTRAIT,
    }
)


class UsageError(ValueError):
    """Malformed command line. main() turns it into the usage text and exit 1."""


class PrinterError(RuntimeError):
    """The print subsystem could not accept the job."""


@dataclass(frozen=True)
class PrintRequest:
    """Options for a single print invocation."""

    pdf_file: str
    password: str = ""
    silent_print: bool = False
    printer_name: Optional[str] = None
    orientation: Orientation = Orientation.AUTO
    show_page_border: bool = False
    dpi: int = 0


INT_MIN = -(2**31)
INT_MAX = 2**31 - 1


def _parse_int(value: str) -> int:
    """Parse a signed 32-bit decimal integer.

    Only ASCII digits with an optional sign are accepted: no whitespace, no
    underscores, no other Unicode digits.

    Raises:
        ValueError: `value` is not such an integer or is out of range.
    """
    if re.fullmatch(r"[+-]?[0-9]+", value) is None:
        raise ValueError(f'For input string: "{value}"')
    number = int(value)
    if not INT_MIN <= number <= INT_MAX:
        raise ValueError(f'Value out of range: "{value}"')
    return number


def parse_arguments(argv: Sequence[str]) -> PrintRequest:
    """Parse command-line tokens into a PrintRequest.

    Any token that is not a known flag is taken as the input file; when there
    are several, the last one wins.

    Args:
        argv: Command-line tokens, without the program name.

    Returns:
        The parsed request.

    Raises:
        UsageError: A flag is missing its value, the orientation is unknown,
            or no input file was given.
        ValueError: The -dpi value is not an integer.
    """
    password = ""
    pdf_file: Optional[str] = None
    silent_print = False
    printer_name: Optional[str] = None
    orientation = Orientation.AUTO
    show_page_border = False
    dpi = 0

    tokens = iter(argv)
    for token in tokens:
        if token == SILENT:
            silent_print = True
        elif token == BORDER:
            show_page_border = True
        elif token in VALUE_FLAGS:
            value = next(tokens, None)
            if value is None:
                raise UsageError(f"{token} requires a value.")
            if token == PASSWORD:
                password = value
            elif token == PRINTER_NAME:
                printer_name = value
            elif token == ORIENTATION:
                if value not in ORIENTATIONS:
                    raise UsageError(f"Unknown orientation: {value}")
                orientation = ORIENTATIONS[value]
            else:
                dpi = _parse_int(value)
        else:
            pdf_file = token

    if pdf_file is None:
        raise UsageError("No input file given.")

    return PrintRequest(
        pdf_file=pdf_file,
        password=password,
        silent_print=silent_print,
        printer_name=printer_name,
        orientation=orientation,
        show_page_border=show_page_border,
        dpi=dpi,
    )


class PdfDocument:
    """An open PDF file and its pypdf reader.

    The underlying file handle stays open until close() is called; use the
    document as a context manager.
    """

    def __init__(self, path: Path, stream: BinaryIO, reader: PdfReader) -> None:
        self.path = path
        self.reader = reader
        self._stream = stream

    @classmethod
    def load(cls, pdf_path: str | os.PathLike[str], password: str = "") -> "PdfDocument":
        """Open a PDF, decrypting it with `password` if it is encrypted.

        An encrypted file is rejected here unless `password` (or the empty
        password, when none is given) opens it.

        Raises:
            OSError: The file cannot be opened.
            pypdf.errors.PdfReadError: The file is not a readable PDF.
            pypdf.errors.WrongPasswordError: `password` does not open it.
        """
        path = Path(pdf_path)
        stream = path.open("rb")
        try:
            reader = PdfReader(stream)
            if reader.is_encrypted and reader.decrypt(password) == PasswordType.NOT_DECRYPTED:
                raise WrongPasswordError(f"Wrong password for {path.name}")
        except Exception:
            stream.close()
            raise
        return cls(path, stream, reader)

    @property
    def closed(self) -> bool:
        return self._stream.closed

    def close(self) -> None:
        if not self._stream.closed:
            self._stream.close()

    def __enter__(self) -> "PdfDocument":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def _effective_size(page: PageObject) -> tuple[float, float]:
    """Return the crop box size as displayed, i.e. after /Rotate."""
    width = float(page.cropbox.width)
    height = float(page.cropbox.height)
    if page.rotation % 180 == 90:
        return height, width
    return width, height


def _needs_rotation(page: PageObject, orientation: Orientation) -> bool:
    width, height = _effective_size(page)
    if orientation is Orientation.PORTRAIT:
        return width > height
    if orientation is Orientation.LANDSCAPE:
        return height > width
    return False


def _border_overlay(page: PageObject) -> PageObject:
    """Build a transparent page stroking a rectangle along `page`'s crop box."""
    box = page.cropbox
    overlay = PageObject.create_blank_page(
        width=float(page.mediabox.width), height=float(page.mediabox.height)
    )
    # Same coordinate space as the page, so boxes not anchored at 0,0 line up.
    overlay.mediabox = page.mediabox
    operators = (
        f"q 0 G {BORDER_LINE_WIDTH} w "
        f"{float(box.left)} {float(box.bottom)} {float(box.width)} {float(box.height)} re S Q"
    )
    stream = DecodedStreamObject()
    stream.set_data(operators.encode("ascii"))
    overlay[NameObject("/Contents")] = stream
    return overlay


def rasterize_pdf(pdf_bytes: bytes, dpi: int) -> bytes:
    """Replace every page of a PDF with an image of it rendered at `dpi`.

    Each output page keeps the displayed size of its source page.

    Raises:
        RuntimeError: If PyMuPDF is not installed.
    """
    try:
        import fitz  # pylint: disable=import-outside-toplevel
    except ImportError as error:  # pragma: no cover
        raise RuntimeError(
            "Printing with -dpi requires the 'pymupdf' package. Install with: pip install pymupdf"
        ) from error

    source = fitz.open(stream=pdf_bytes, filetype="pdf")
    target = fitz.open()
    try:
        for page in source:
            pixmap = page.get_pixmap(dpi=dpi)
            raster_page = target.new_page(width=page.rect.width, height=page.rect.height)
            raster_page.insert_image(raster_page.rect, pixmap=pixmap)
        return target.tobytes()
    finally:
        target.close()
        source.close()


class PdfPageable:
    """Turns an open document into the PDF that is handed to the spooler."""

    def __init__(
        self,
        document: PdfDocument,
        orientation: Orientation = Orientation.AUTO,
        show_page_border: bool = False,
        dpi: int = 0,
    ) -> None:
        self.document = document
        self.orientation = orientation
        self.show_page_border = show_page_border
        self.dpi = dpi

    @property
    def page_count(self) -> int:
        return len(self.document.reader.pages)

    def _compose(self) -> PdfWriter:
        writer = PdfWriter()
        for source_page in self.document.reader.pages:
            page = writer.add_page(source_page)
            if _needs_rotation(page, self.orientation):
                page.rotate(90)
            if self.show_page_border:
                page.merge_page(_border_overlay(page))
        return writer

    def to_bytes(self) -> bytes:
        buffer = io.BytesIO()
        self._compose().write(buffer)
        pdf_bytes = buffer.getvalue()
        if self.dpi > 0:
            pdf_bytes = rasterize_pdf(pdf_bytes, self.dpi)
        return pdf_bytes

    def write(self, output: BinaryIO) -> None:
        output.write(self.to_bytes())


def _unique(names: Sequence[str]) -> list[str]:
    """Drop blanks and duplicates, keeping the first occurrence order."""
    seen: set[str] = set()
    unique_names: list[str] = []
    for name in names:
        value = name.strip()
        if value and value not in seen:
            unique_names.append(value)
            seen.add(value)
    return unique_names


def _load_winspool() -> Optional[object]:
    """Load the Windows print spooler DLL, or return None off Windows."""
    if not sys.platform.startswith("win"):
        return None

    import ctypes  # pylint: disable=import-outside-toplevel

    try:
        # 'winspool' by short name does not resolve on every Python build.
        return ctypes.WinDLL("winspool.drv")
    except OSError:
        return None


def get_default_printer_name_windows() -> Optional[str]:
    """Return the Windows default printer name, or None."""
    winspool = _load_winspool()
    if winspool is None:
        return None

    import ctypes  # pylint: disable=import-outside-toplevel
    from ctypes import wintypes  # pylint: disable=import-outside-toplevel

    get_default_printer = winspool.GetDefaultPrinterW
    get_default_printer.argtypes = [wintypes.LPWSTR, ctypes.POINTER(wintypes.DWORD)]
    get_default_printer.restype = wintypes.BOOL

    needed_chars = wintypes.DWORD(0)
    # First call only reports the buffer size (in WCHARs).
    get_default_printer(None, ctypes.byref(needed_chars))
    if needed_chars.value == 0:
        return None

    buffer = ctypes.create_unicode_buffer(needed_chars.value)
    if not get_default_printer(buffer, ctypes.byref(needed_chars)):
        return None
    return buffer.value.strip() or None


def list_printers_windows_win32() -> list[str]:
    """List local and connected printers with EnumPrintersW (level 4)."""
    winspool = _load_winspool()
    if winspool is None:
        return []

    import ctypes  # pylint: disable=import-outside-toplevel
    from ctypes import wintypes  # pylint: disable=import-outside-toplevel

    printer_enum_local = 0x00000002
    printer_enum_connections = 0x00000004

    class PrinterInfo4(ctypes.Structure):
        _fields_ = [
            ("pPrinterName", wintypes.LPWSTR),
            ("pServerName", wintypes.LPWSTR),
            ("Attributes", wintypes.DWORD),
        ]

    enum_printers = winspool.EnumPrintersW
    enum_printers.argtypes = [
        wintypes.DWORD,
        wintypes.LPWSTR,
        wintypes.DWORD,
        wintypes.LPBYTE,
        wintypes.DWORD,
        ctypes.POINTER(wintypes.DWORD),
        ctypes.POINTER(wintypes.DWORD),
    ]
    enum_printers.restype = wintypes.BOOL

    flags = printer_enum_local | printer_enum_connections
    needed_bytes = wintypes.DWORD(0)
    returned_count = wintypes.DWORD(0)

    # Size query: fails with INSUFFICIENT_BUFFER and leaves returned_count at 0.
    enum_printers(flags, None, 4, None, 0, ctypes.byref(needed_bytes), ctypes.byref(returned_count))
    if needed_bytes.value == 0:
        return []

    buffer = ctypes.create_string_buffer(needed_bytes.value)
    ok = enum_printers(
        flags,
        None,
        4,
        ctypes.cast(buffer, wintypes.LPBYTE),
        needed_bytes.value,
        ctypes.byref(needed_bytes),
        ctypes.byref(returned_count),
    )
    if not ok:
        return []

    entries = ctypes.cast(buffer, ctypes.POINTER(PrinterInfo4))
    return _unique([entries[index].pPrinterName or "" for index in range(returned_count.value)])


def list_printers_windows_powershell() -> list[str]:
    """List printers through PowerShell Get-Printer; empty list on failure."""
    powershell = shutil.which("powershell") or shutil.which("pwsh")
    if powershell is None:
        return []

    command = [
        powershell,
        "-NoProfile",
        "-Command",
        "Get-Printer | Select-Object -ExpandProperty Name",
    ]
    result = subprocess.run(command, check=False, capture_output=True, text=True)
    if result.returncode != 0:
        return []
    return _unique((result.stdout or "").splitlines())


def list_printers_cups() -> list[str]:
    """List printers known to CUPS via `lpstat -p` (macOS/Linux)."""
    lpstat_binary = shutil.which("lpstat")
    if lpstat_binary is None:
        return []

    result = subprocess.run([lpstat_binary, "-p"], check=False, capture_output=True, text=True)
    if result.returncode != 0:
        return []

    printer_names: list[str] = []
    for line in (result.stdout or "").splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[0] == "printer":
            printer_names.append(parts[1])
    return _unique(printer_names)


def list_available_printers() -> list[str]:
    """List printer names for the current platform, in platform order."""
    if sys.platform.startswith("win"):
        return list_printers_windows_win32() or list_printers_windows_powershell()
    return list_printers_cups()


def find_print_service(printer_name: str, services: Sequence[str]) -> Optional[str]:
    """Return the first service whose name contains `printer_name`, or None."""
    for service in services:
        if printer_name in service:
            return service
    return None


def detect_ghostscript_binary(custom_binary: Optional[str] = None) -> Optional[str]:
    """Find a Ghostscript executable.

    Order: explicit override, then PATH, then (Windows) the newest install
    under Program Files.

    Args:
        custom_binary: Optional executable name or full path.

    Returns:
        The executable path, or None if not found.
    """
    if custom_binary:
        custom_path = Path(custom_binary)
        if custom_path.is_file():
            return str(custom_path)
        return shutil.which(custom_binary)

    for candidate in ("gswin64c", "gswin32c", "gs", "ghostscript"):
        found = shutil.which(candidate)
        if found is not None:
            return found

    if not sys.platform.startswith("win"):
        return None

    installed: list[Path] = []
    for base_dir in (Path("C:/Program Files/gs"), Path("C:/Program Files (x86)/gs")):
        if base_dir.is_dir():
            # e.g. C:\Program Files\gs\gs10.06.0\bin\gswin64c.exe
            installed.extend(base_dir.glob("gs*/bin/gswin64c.exe"))
            installed.extend(base_dir.glob("gs*/bin/gswin32c.exe"))
    if not installed:
        return None

    def version_key(path_value: Path) -> tuple[tuple[int, ...], bool]:
        match = re.search(r"gs(\d+)\.(\d+)\.(\d+)", str(path_value))
        version = tuple(int(part) for part in match.groups()) if match else (0, 0, 0)
        return version, path_value.name.lower() == "gswin64c.exe"

    return str(max(installed, key=version_key))


def _failure_message(tool: str, result: subprocess.CompletedProcess, job_name: str) -> str:
    stderr_snippet = (result.stderr or "").strip()[-1500:]
    return f"{tool} failed printing {job_name} (rc={result.returncode}).\n{stderr_snippet}"


def _safe_unlink(file_path: Path) -> None:
    try:
        file_path.unlink(missing_ok=True)
    except OSError:
        pass


class PrintJob:
    """A job for the platform spooler.

    `printer_name` of None sends the job to the system default printer.
    """

    def __init__(self, job_name: str, printer_name: Optional[str] = None) -> None:
        self.job_name = job_name
        self.printer_name = printer_name
        self.pageable: Optional[PdfPageable] = None

    def set_pageable(self, pageable: PdfPageable) -> None:
        self.pageable = pageable

    def print_dialog(self) -> bool:
        """Ask the user to confirm the job. Returns True to go ahead."""
        try:
            import tkinter as tk  # pylint: disable=import-outside-toplevel
            from tkinter import messagebox  # pylint: disable=import-outside-toplevel
        except ImportError as error:  # pragma: no cover
            raise RuntimeError(
                "The print dialog requires tkinter. Use -silentPrint to print without it."
            ) from error

        pages = self.pageable.page_count if self.pageable is not None else 0
        printer = self.printer_name or "Default printer"

        root = tk.Tk()
        root.withdraw()
        try:
            return bool(
                messagebox.askokcancel(
                    "Print",
                    f"Print {self.job_name} ({pages} page(s))\nPrinter: {printer}",
                    parent=root,
                )
            )
        finally:
            root.destroy()

    def print(self) -> None:
        """Spool the attached pageable.

        Raises:
            PrinterError: No pageable is attached, the spooler tool is missing,
                or it rejected the job.
        """
        if self.pageable is None:
            raise PrinterError("No pageable attached to the print job.")

        handle = tempfile.NamedTemporaryFile(suffix=".pdf", delete=False)
        spool_path = Path(handle.name)
        try:
            try:
                self.pageable.write(handle)
            finally:
                handle.close()

            if sys.platform.startswith("win"):
                self._print_windows_ghostscript(spool_path)
            else:
                self._print_cups(spool_path)
        finally:
            _safe_unlink(spool_path)

    def _print_cups(self, pdf_path: Path) -> None:
        lp_binary = shutil.which("lp")
        if lp_binary is None:
            raise PrinterError("`lp` was not found on PATH (required for macOS/Linux printing).")

        command: list[str] = [lp_binary, "-t", self.job_name]
        if self.printer_name:
            command.extend(["-d", self.printer_name])
        command.append(str(pdf_path))

        result = subprocess.run(command, check=False, capture_output=True, text=True)
        if result.returncode != 0:
            raise PrinterError(_failure_message("`lp`", result, self.job_name))

    def _print_windows_ghostscript(self, pdf_path: Path) -> None:
        gs_binary = detect_ghostscript_binary(os.environ.get(GS_ENV_VAR))
        if gs_binary is None:
            raise PrinterError("Ghostscript was not found on PATH (required for Windows printing).")

        printer_name = self.printer_name or get_default_printer_name_windows()
        if printer_name is None:
            raise PrinterError("Could not determine a Windows default printer. Use -printerName.")

        command: list[str] = [
            gs_binary,
            "-dBATCH",
            "-dNOPAUSE",
            "-dSAFER",
            "-sDEVICE=mswinpr2",
            f"-sDocumentName={self.job_name}",
            f"-sOutputFile=%printer%{printer_name}",
            str(pdf_path),
        ]
        result = subprocess.run(command, check=False, capture_output=True, text=True)
        if result.returncode != 0:
            raise PrinterError(_failure_message("Ghostscript", result, self.job_name))


def print_document(request: PrintRequest) -> bool:
    """Load, configure and print the document named by `request`.

    Returns:
        True if the job was spooled, False if the user cancelled the dialog.
    """
    with PdfDocument.load(request.pdf_file, request.password) as document:
        job = PrintJob(job_name=Path(request.pdf_file).name)

        if request.printer_name is not None:
            service = find_print_service(request.printer_name, list_available_printers())
            if service is None:
                print(
                    f"Warning: No printer matching '{request.printer_name}'; using the default printer.",
                    file=sys.stderr,
                )
            job.printer_name = service

        job.set_pageable(
            PdfPageable(
                document,
                orientation=request.orientation,
                show_page_border=request.show_page_border,
                dpi=request.dpi,
            )
        )

        if request.silent_print or job.print_dialog():
            job.print()
            return True
        return False


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    try:
        request = parse_arguments(sys.argv[1:] if argv is None else argv)
    except UsageError:
        print(USAGE, file=sys.stderr)
        return 1

    print_document(request)
    return 0


if __name__ == "__main__":
    sys.exit(main())
