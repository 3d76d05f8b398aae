"""
Referral counters on doctors and representatives.

The stored counters are caches bumped as a side effect of patient and
appointment creation. The recount functions rebuild them from the source rows
and can be run any number of times with the same outcome.
"""

import logging
from typing import Dict, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from models import Appointment, Doctor, Patient, Representative

logger = logging.getLogger(__name__)


def increment_doctor_counter(session: Session, doctor_id: Optional[str], field: str, amount: int = 1) -> None:
    """Best-effort bump of ``total_patients_referred`` or ``total_scans_referred``"""
    if not doctor_id:
        return
    try:
        doctor = session.get(Doctor, doctor_id)
        if doctor is None:
            return
        setattr(doctor, field, (getattr(doctor, field) or 0) + amount)
        session.add(doctor)
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Failed to update {field} of doctor {doctor_id}: {e}")


def increment_representative_counter(session: Session, representative_id: Optional[str], field: str, amount: int = 1) -> None:
    if not representative_id:
        return
    try:
        representative = session.get(Representative, representative_id)
        if representative is None:
            return
        setattr(representative, field, max(0, (getattr(representative, field) or 0) + amount))
        session.add(representative)
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Failed to update {field} of representative {representative_id}: {e}")


def _counts(session: Session, column) -> Dict[str, int]:
    rows = session.exec(
        select(column, func.count()).where(column.is_not(None)).group_by(column)
    ).all()
    return {key: count for key, count in rows}


def recount_doctor_referrals(session: Session) -> int:
    """Recompute both doctor counters; returns the number of doctors changed"""
    patients = _counts(session, Patient.doctor_referred_id)
    scans = _counts(session, Appointment.referred_by_id)

    changed = 0
    for doctor in session.exec(select(Doctor)).all():
        expected = (patients.get(doctor.id, 0), scans.get(doctor.id, 0))
        if (doctor.total_patients_referred, doctor.total_scans_referred) != expected:
            doctor.total_patients_referred, doctor.total_scans_referred = expected
            session.add(doctor)
            changed += 1
    session.commit()
    logger.info(f"Doctor referral recount updated {changed} doctor(s)")
    return changed


def recount_representative_counters(session: Session) -> int:
    """Recompute patientsCount and doctorsCount; returns the number changed"""
    patients = _counts(session, Patient.representative_id)
    doctors = _counts(session, Doctor.representative_id)

    changed = 0
    for representative in session.exec(select(Representative)).all():
        expected = (patients.get(representative.id, 0), doctors.get(representative.id, 0))
        if (representative.patients_count, representative.doctors_count) != expected:
            representative.patients_count, representative.doctors_count = expected
            session.add(representative)
            changed += 1
    session.commit()
    logger.info(f"Representative recount updated {changed} representative(s)")
    return changed
