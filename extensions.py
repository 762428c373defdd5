"""
Модуль: `extensions.py`.
Назначение: Экземпляры Flask-расширений портала «Tongxing».

Расширения создаются без приложения и связываются с ним в `create_app()`,
поэтому модели и сервисы могут импортировать их на уровне модуля.
"""

from flask_babel import Babel
from flask_cors import CORS
from flask_login import LoginManager
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import MetaData

# Предсказуемые имена ограничений: на них ссылаются миграции и обработка IntegrityError
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_N_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

db = SQLAlchemy(metadata=MetaData(naming_convention=NAMING_CONVENTION))
login_manager = LoginManager()
cors = CORS()
babel = Babel()
