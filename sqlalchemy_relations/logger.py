import logging

logger = logging.getLogger("sqlalchemy_relations")
