"""
DICOM Tag Reader
Best-effort extraction of patient and study tags to enrich metadata.json.

Tag reading never decides what goes into the payload (that is the
classifier's job) and never fails a packaging run: a file pydicom cannot
parse simply contributes no tags.
"""

import io
import logging
from datetime import date
from pathlib import Path

import pydicom
from pydicom.uid import generate_uid

logger = logging.getLogger(__name__)

# metadata key -> DICOM keyword
TAG_KEYWORDS = {
    "patient_name": "PatientName",
    "patient_id": "PatientID",
    "patient_dob": "PatientBirthDate",
    "patient_sex": "PatientSex",
    "study_description": "StudyDescription",
    "study_uid": "StudyInstanceUID",
    "study_date": "StudyDate",
    "modality": "Modality",
    "series_uid": "SeriesInstanceUID",
    "series_description": "SeriesDescription",
}


def format_dicom_date(value: str) -> str:
    """Convert a DICOM DA value (YYYYMMDD) to ISO format; today's date if malformed."""
    if not value or len(value) != 8 or not value.isdigit():
        return date.today().isoformat()
    return f"{value[:4]}-{value[4:6]}-{value[6:]}"


def format_person_name(value: str) -> str:
    """Convert a DICOM PN value ("Last^First^Middle^Prefix^Suffix") to "First Middle Last"."""
    if not value:
        return ""
    parts = value.split("^") + [""] * 3
    last, first, middle = parts[0], parts[1], parts[2]
    return " ".join(p for p in (first, middle, last) if p).strip()


class DicomTagReader:
    """Reads a fixed set of tags from DICOM files using pydicom."""

    def extract_tags(self, source: bytes | str | Path) -> dict:
        """
        Extract known tags from one file.

        Args:
            source: File bytes, or a path so pydicom reads only the header.

        Returns:
            A partial dict keyed like TAG_KEYWORDS; empty if unreadable.
        """
        if isinstance(source, (bytes, bytearray)):
            source = io.BytesIO(source)
        try:
            ds = pydicom.dcmread(source, stop_before_pixels=True, force=True)
            tags = {}
            for key, keyword in TAG_KEYWORDS.items():
                value = ds.get(keyword)
                if value is not None and str(value).strip():
                    tags[key] = str(value).strip()
            return tags
        except Exception as e:
            # Enrichment only; an unparseable file must not stop packaging
            logger.debug("No DICOM tags readable: %s", e)
            return {}

    def summarize(self, paths: list[Path], patient: dict = None) -> dict:
        """
        Build the `dicom` block of metadata.json from a set of payload files.

        Patient fields fall back to the configured patient, study fields to
        generated values, matching what the sender would otherwise supply.
        """
        patient = patient or {}
        instances = []
        for path in paths:
            tags = self.extract_tags(Path(path))
            if tags:
                instances.append((Path(path), tags))

        if not instances:
            return {
                "patient_name": patient.get("name"),
                "patient_id": patient.get("id"),
                "patient_dob": patient.get("dob"),
                "patient_sex": patient.get("sex"),
                "study_description": "Study from configuration",
                "study_uid": generate_uid(),
                "study_date": date.today().isoformat(),
                "modalities": ["UNKNOWN"],
                "series_count": 1,
                "instance_count": 0,
                "series": [],
            }

        series: dict[str, dict] = {}
        modalities = []
        for path, tags in instances:
            modality = tags.get("modality", "UNKNOWN")
            if modality not in modalities:
                modalities.append(modality)
            series_uid = tags.get("series_uid") or str(path.parent)
            entry = series.setdefault(series_uid, {
                "series_uid": series_uid,
                "modality": modality,
                "instance_count": 0,
            })
            if tags.get("series_description"):
                entry["series_description"] = tags["series_description"]
            entry["instance_count"] += 1

        first = instances[0][1]
        dob = first.get("patient_dob")
        return {
            "patient_name": format_person_name(first["patient_name"]) if "patient_name" in first else patient.get("name"),
            "patient_id": first.get("patient_id", patient.get("id")),
            "patient_dob": format_dicom_date(dob) if dob else patient.get("dob"),
            "patient_sex": first.get("patient_sex", patient.get("sex")),
            "study_description": first.get("study_description", "Study"),
            "study_uid": first.get("study_uid") or generate_uid(),
            "study_date": format_dicom_date(first.get("study_date", "")),
            "modalities": modalities,
            "series_count": len(series),
            "instance_count": len(instances),
            "series": list(series.values()),
        }
