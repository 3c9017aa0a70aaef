import datetime
import io
import json
from functools import partial
from typing import Any, Hashable, Type, TypeVar

import pandas as pd
from esdbclient import EventStoreDBClient
from fastapi import HTTPException
from pydantic import BaseModel
from sqlmodel import Field, Session, SQLModel

from h2_registry.core.database import operations

T = TypeVar("T", bound="ActiveRecord")

utc_datetime_now = partial(datetime.datetime.now, datetime.timezone.utc)


class ActiveRecord(SQLModel):
    created_at: datetime.datetime = Field(
        default_factory=utc_datetime_now, nullable=False
    )

    @classmethod
    def by_id(
        cls: Type[T],
        id_: int,
        session: Session,
    ) -> T:
        obj = session.get(cls, id_)
        if obj is None:
            raise HTTPException(
                status_code=404, detail=f"{cls.__name__} with id {id_} not found"
            )
        return obj

    @classmethod
    def create(
        cls,
        source: list[dict[Hashable, Any]]
        | dict[Hashable, Any]
        | dict[str, Any]
        | BaseModel,
        session: Session,
        esdb_client: EventStoreDBClient | None = None,
    ) -> list[SQLModel]:
        if isinstance(source, (SQLModel, BaseModel)):
            obj = [cls.model_validate(source.model_dump())]
        elif isinstance(source, dict):
            obj = [cls.model_validate(json.loads(json.dumps(source, default=str)))]
        elif isinstance(source, list):
            obj = [
                cls.model_validate(json.loads(json.dumps(elem, default=str)))
                for elem in source
            ]
        else:
            raise ValueError(f"The input type {type(source)} can not be processed")

        created_entities = operations.write_to_database(
            obj,  # type: ignore
            session,
            esdb_client,
        )

        return created_entities

    def update(
        self,
        update_entity: BaseModel,
        session: Session,
        esdb_client: EventStoreDBClient | None = None,
    ) -> SQLModel | None:
        updated_entity = operations.update_database_entity(
            entity=self,
            update_entity=update_entity,
            session=session,
            esdb_client=esdb_client,
        )

        return updated_entity


def parse_import_file(filename: str | None, content: str) -> pd.DataFrame:
    """Parse the import file content into a pandas DataFrame.

    Supports both CSV and JSON formats.

    Args:
        filename (str | None): The original filename (used to determine file type)
        content (str): The file content as a string

    Returns:
        pd.DataFrame: Parsed data as a pandas DataFrame

    Raises:
        ValueError: If the file format is not supported or parsing fails
    """
    file_type = None
    if filename:
        filename_lower = filename.lower()
        if filename_lower.endswith(".csv"):
            file_type = "csv"
        elif filename_lower.endswith(".json"):
            file_type = "json"

    # If we can't determine from filename, try to parse as JSON first, then CSV
    if file_type is None:
        try:
            json.loads(content)
            file_type = "json"
        except json.JSONDecodeError:
            file_type = "csv"

    try:
        if file_type == "csv":
            return pd.read_csv(io.StringIO(content))

        json_data = json.loads(content)

        # Array of objects: [{"col1": "val1", "col2": "val2"}, ...]
        if isinstance(json_data, list):
            if not json_data:
                raise ValueError("JSON file contains an empty array")

            if not all(isinstance(item, dict) for item in json_data):
                raise ValueError("JSON array must contain only objects")

            return pd.DataFrame(json_data)

        # Object with arrays: {"col1": ["val1", "val2"], "col2": ["val3", "val4"]}
        elif isinstance(json_data, dict):
            return pd.DataFrame(json_data)

        raise ValueError(
            "JSON format not supported. Use array of objects or object with arrays format."
        )

    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON format: {str(e)}")
    except pd.errors.EmptyDataError:
        raise ValueError("The uploaded file is empty")
    except pd.errors.ParserError as e:
        raise ValueError(f"Error parsing CSV file: {str(e)}")
