from sqlalchemy import BigInteger, DateTime, func, Integer, String, Text
from sqlalchemy.orm import mapped_column, Mapped
from datetime import datetime
from typing import Optional
from typing_extensions import Annotated

# Primary key types
IntegerPrimaryKeyType = Mapped[
    Annotated[int, mapped_column(Integer, primary_key=True, autoincrement=False)]
]
StringPrimaryKeyType = Mapped[Annotated[str, mapped_column(String, primary_key=True)]]

# Normal types
IndexedBigIntegerType = Mapped[
    Annotated[int, mapped_column(BigInteger, nullable=False, index=True)]
]
StringType = Mapped[Annotated[str, mapped_column(String, nullable=False)]]
IndexedStringType = Mapped[
    Annotated[str, mapped_column(String, nullable=False, index=True)]
]
UniqueStringType = Mapped[
    Annotated[str, mapped_column(String, nullable=False, unique=True)]
]
# Arbitrary precision integers kept as their decimal representation
DecimalStringType = Mapped[Annotated[str, mapped_column(Text, nullable=False)]]

# Timestamp types
IndexedTimestampType = Mapped[
    Annotated[
        datetime, mapped_column(DateTime(timezone=True), nullable=False, index=True)
    ]
]
NullableTimestampType = Mapped[
    Annotated[Optional[datetime], mapped_column(DateTime(timezone=True), nullable=True)]
]
InsertedAtType = Mapped[
    Annotated[
        datetime,
        mapped_column(DateTime(timezone=True), default=func.now(), index=True),
    ]
]
UpdatedAtType = Mapped[
    Annotated[
        datetime,
        mapped_column(
            DateTime(timezone=True),
            default=func.now(),
            onupdate=func.now(),
        ),
    ]
]
