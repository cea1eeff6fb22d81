"""Hospital directory fixtures for the Kingston-area sample set.

Used to seed a development database; production reads the directory
service's own data.
"""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.hospital import Hospital

logger = logging.getLogger(__name__)

# Emergency department capacity (max concurrent patients), not bed count
HOSPITALS = [
    {
        "id": "HOSP001",
        "name": "Kingston Public Hospital",
        "region": "Kingston",
        "address": "North Street, Kingston",
        "latitude": 17.9714,
        "longitude": -76.7931,
        "max_concurrent_patients": 60,
        "specialties": ["Emergency", "Trauma", "Surgery", "ICU", "Orthopedics"],
    },
    {
        "id": "HOSP002",
        "name": "Spanish Town Hospital",
        "region": "Spanish Town",
        "address": "1 Burke Road, Spanish Town",
        "latitude": 17.9909,
        "longitude": -76.9574,
        "max_concurrent_patients": 40,
        "specialties": ["Emergency", "General Medicine", "Pediatrics", "Surgery"],
    },
    {
        "id": "HOSP003",
        "name": "University Hospital of the West Indies",
        "region": "Kingston",
        "address": "Mona, Kingston 7",
        "latitude": 18.0061,
        "longitude": -76.7466,
        "max_concurrent_patients": 70,
        "specialties": [
            "Emergency", "Trauma", "Surgery", "ICU", "Cardiology", "Neurology", "Pediatrics",
        ],
    },
    {
        "id": "HOSP004",
        "name": "Bustamante Hospital for Children",
        "region": "Kingston",
        "address": "Arthur Wint Drive, Kingston 5",
        "latitude": 18.0009,
        "longitude": -76.7794,
        "max_concurrent_patients": 30,
        "specialties": ["Emergency", "Pediatrics", "ICU", "Surgery", "Neonatology"],
    },
    {
        "id": "HOSP007",
        "name": "Linstead Hospital",
        "region": "St. Catherine",
        "address": "Bog Walk Road, Linstead",
        "latitude": 18.1356,
        "longitude": -77.0317,
        "max_concurrent_patients": 15,
        "specialties": ["Emergency", "General Medicine", "Maternity"],
    },
    {
        "id": "HOSP008",
        "name": "Portmore Heart Academy & Hospital",
        "region": "Portmore",
        "address": "Portmore Pines Plaza, Portmore",
        "latitude": 17.9527,
        "longitude": -76.8847,
        "max_concurrent_patients": 25,
        "specialties": ["Emergency", "Cardiology", "Surgery", "ICU"],
    },
    {
        "id": "HOSP012",
        "name": "Princess Margaret Hospital",
        "region": "St. Thomas",
        "address": "Morant Bay, St. Thomas",
        "latitude": 17.8819,
        "longitude": -76.4092,
        "max_concurrent_patients": 15,
        "specialties": ["Emergency", "General Medicine", "Maternity", "Surgery"],
    },
]


async def seed_hospitals(session: AsyncSession) -> int:
    """Insert fixture hospitals that are not already present.

    Returns:
        Number of hospitals created
    """
    result = await session.execute(select(Hospital.id))
    existing = set(result.scalars().all())

    created = 0
    for data in HOSPITALS:
        if data["id"] in existing:
            continue
        session.add(Hospital(**data))
        created += 1

    await session.commit()
    logger.info(f"Seeded {created} hospitals")
    return created
