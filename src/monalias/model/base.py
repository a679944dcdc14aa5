from sqlalchemy import String, orm
from sqlalchemy.orm import mapped_column

from typing_extensions import Annotated

str128 = Annotated[str, 128]
str512 = Annotated[str, 512]
guidpk = Annotated[str, mapped_column(String(512), primary_key=True)]


class Base(orm.DeclarativeBase):
    type_annotation_map = {
        str128: String(128),
        str512: String(512),
        guidpk: String(512),
    }
