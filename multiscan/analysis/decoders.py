"""Report decoders keyed by output format name.

Each supported output type is a ReportFormat variant in REPORT_FORMATS. A
variant knows its default artifact pattern and, for structured formats, how
to decode an artifact into TestRecord entries. Opaque formats (html, json,
test_result) are never decoded; their artifacts are only tracked as report
files. Adding a format means adding a variant here.

Decoding never raises: an artifact that is missing or cannot be parsed is
logged and contributes no records, so other formats and other lanes still
count.
"""

from __future__ import annotations

import glob as globlib
import json
import logging
import os
import subprocess
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator

from multiscan.analysis.aggregator import FAILED, PASSING, FailureDetail, TestRecord

logger = logging.getLogger(__name__)

# Glob lookup: pattern -> matching paths
GlobLookup = Callable[[str], Iterable[str]]

# Result bundle reader: (bundle_path, object_id) -> decoded JSON object
BundleReader = Callable[[str, str | None], dict[str, Any]]


@dataclass(frozen=True)
class ReportFormat:
    """A report format variant.

    ``detail_rank`` orders decoding: formats with richer failure detail
    decode first so their detail wins the "set if absent" merge.
    """

    name: str
    default_pattern: str
    decoder: Callable[[str], list[TestRecord]] | None = None
    detail_rank: int = 100
    fixed_pattern: bool = False

    def decode(self, artifact: str) -> list[TestRecord]:
        """Decode one artifact; opaque formats yield no records."""
        if self.decoder is None:
            return []
        return self.decoder(artifact)


def _junit_identifier(testcase: ET.Element) -> str:
    """``BagOfTests.CoinTossingUITests`` + ``testResultIsTails`` ->
    ``BagOfTests/CoinTossingUITests/testResultIsTails``."""
    classname = testcase.get("classname", "").replace(".", "/")
    name = testcase.get("name", "")
    return f"{classname}/{name}" if classname else name


def decode_junit(path: str) -> list[TestRecord]:
    """Decode a JUnit XML report into records, in report order.

    A ``<failure>`` or ``<error>`` child marks the test failed; its
    ``message`` attribute and text (``file:line``) become the detail.
    Skipped tests produce no record.
    """
    try:
        root = ET.parse(path).getroot()
    except (ET.ParseError, OSError) as e:
        logger.warning("Could not decode junit report %s: %s", path, e)
        return []

    records: list[TestRecord] = []
    for testcase in root.iter("testcase"):
        identifier = _junit_identifier(testcase)
        if not identifier:
            continue
        if testcase.find("skipped") is not None:
            continue

        failure = testcase.find("failure")
        if failure is None:
            failure = testcase.find("error")

        if failure is None:
            records.append(TestRecord(identifier, PASSING))
            continue

        detail = FailureDetail(
            message=failure.get("message", ""),
            location=(failure.text or "").strip(),
        )
        records.append(TestRecord(identifier, FAILED, detail))
    return records


def _xcresulttool_reader(bundle: str, object_id: str | None = None) -> dict[str, Any]:
    """Read a result bundle object as JSON via ``xcrun xcresulttool``."""
    cmd = ["xcrun", "xcresulttool", "get", "--format", "json", "--path", bundle]
    if object_id is not None:
        cmd.extend(["--id", object_id])
    proc = subprocess.run(cmd, capture_output=True, text=True, timeout=120)
    if proc.returncode != 0:
        raise OSError(
            f"xcresulttool exited {proc.returncode}: {proc.stderr.strip()}"
        )
    return json.loads(proc.stdout)


def _value(node: Any, key: str) -> Any:
    """Unwrap ``{"key": {"_value": v}}`` nodes from xcresulttool JSON."""
    if not isinstance(node, dict):
        return None
    wrapped = node.get(key)
    if isinstance(wrapped, dict):
        return wrapped.get("_value")
    return None


def _values(node: Any, key: str) -> list[Any]:
    """Unwrap ``{"key": {"_values": [...]}}`` array nodes."""
    if not isinstance(node, dict):
        return []
    wrapped = node.get(key)
    if isinstance(wrapped, dict):
        return list(wrapped.get("_values", []))
    return []


def _bundle_tests(node: Any, target: str) -> Iterator[TestRecord]:
    """Walk a test summary tree, yielding one record per test leaf."""
    if isinstance(node, list):
        for child in node:
            yield from _bundle_tests(child, target)
        return
    if not isinstance(node, dict):
        return

    target = _value(node, "targetName") or target
    status = _value(node, "testStatus")
    identifier = _value(node, "identifier")
    if status is not None and identifier is not None:
        name = identifier[:-2] if identifier.endswith("()") else identifier
        full_name = f"{target}/{name}" if target else name
        if status == "Success":
            yield TestRecord(full_name, PASSING)
        elif status == "Failure":
            yield TestRecord(full_name, FAILED)
        return

    for key in ("summaries", "testableSummaries", "tests", "subtests"):
        yield from _bundle_tests(_values(node, key), target)


def decode_result_bundle(
    path: str, reader: BundleReader | None = None
) -> list[TestRecord]:
    """Decode a result bundle into pass/fail records.

    Result bundles carry no message or location in the common case, so
    failed records have no detail.
    """
    read = reader or _xcresulttool_reader
    try:
        root = read(path, None)
        records: list[TestRecord] = []
        for action in _values(root, "actions"):
            tests_ref = (action.get("actionResult") or {}).get("testsRef")
            ref_id = _value(tests_ref, "id")
            if ref_id is None:
                continue
            records.extend(_bundle_tests(read(path, ref_id), ""))
        return records
    except (OSError, ValueError, subprocess.SubprocessError, AttributeError) as e:
        logger.warning("Could not decode result bundle %s: %s", path, e)
        return []


REPORT_FORMATS: dict[str, ReportFormat] = {
    "junit": ReportFormat("junit", "report*.xml", decode_junit, detail_rank=0),
    "xcresult": ReportFormat(
        "xcresult", "report*.xcresult", decode_result_bundle, detail_rank=10
    ),
    "html": ReportFormat("html", "report*.html"),
    "json": ReportFormat("json", "report*.json"),
    "test_result": ReportFormat(
        "test_result", "*.test_result", fixed_pattern=True
    ),
}


def split_option_list(value: Any) -> list[str]:
    """Split a comma-separated option (or pass a list through)."""
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = [str(v) for v in value]
    return [item.strip() for item in items if item.strip()]


def _pattern_from_filename(filename: str) -> str:
    """``report.xml`` -> ``report*.xml``."""
    stem, ext = os.path.splitext(filename)
    return f"{stem}*{ext}"


def glob_patterns(output_types: Any, output_files: Any) -> list[tuple[ReportFormat, str]]:
    """Pair each output type with the artifact pattern to look up.

    Types and file names are paired by position; a type without a file name
    uses its format's default pattern. The test_result lookup is always
    included.

    Raises:
        KeyError: If an output type is not a known format.
    """
    types = split_option_list(output_types)
    files = split_option_list(output_files)

    pairs: list[tuple[ReportFormat, str]] = []
    for i, type_name in enumerate(types):
        fmt = REPORT_FORMATS[type_name]
        if fmt.fixed_pattern or i >= len(files):
            pattern = fmt.default_pattern
        else:
            pattern = _pattern_from_filename(files[i])
        pairs.append((fmt, pattern))

    if "test_result" not in types:
        fmt = REPORT_FORMATS["test_result"]
        pairs.append((fmt, fmt.default_pattern))
    return pairs


def collect_reports(
    directory: str,
    patterns: list[tuple[ReportFormat, str]],
    glob: GlobLookup | None = None,
    exclude: Iterable[Any] = (),
) -> list[tuple[ReportFormat, list[str]]]:
    """Find artifacts for each format under the lane directories of *directory*.

    Artifacts live one level down (``<directory>/*/<pattern>``), one
    subdirectory per lane. Lane directories listed in *exclude* are skipped.
    No matches is not an error.
    """
    lookup = glob or globlib.glob
    skipped = {os.path.normpath(str(d)) for d in exclude}
    found: list[tuple[ReportFormat, list[str]]] = []
    for fmt, pattern in patterns:
        paths = sorted(
            p for p in lookup(os.path.join(directory, "*", pattern))
            if os.path.normpath(os.path.dirname(p)) not in skipped
        )
        found.append((fmt, paths))
    return found


def decode_reports(
    reports: list[tuple[ReportFormat, list[str]]],
) -> tuple[list[TestRecord], list[str]]:
    """Decode every decodable artifact and list every artifact found.

    Formats decode in ``detail_rank`` order so that the richest failure
    detail is seen first. Every format's records are kept; when two
    structured formats describe the same failure, it is counted by both.

    Returns:
        Tuple of (records, report_files).
    """
    records: list[TestRecord] = []
    report_files: list[str] = []
    for fmt, paths in sorted(reports, key=lambda item: item[0].detail_rank):
        report_files.extend(paths)
        for path in paths:
            records.extend(fmt.decode(path))
    return records, report_files
