from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass
class DatabaseConfig:
    urls: Dict[str, str] = field(default_factory=dict)
    default_env: str = "local"

    def url_for(self, env: str) -> Optional[str]:
        return self.urls.get(env) or None


@dataclass
class BackupConfig:
    backup_dir: str
    retention_days: int
    max_count: int
    record_in_database: bool


@dataclass
class TaricConfig:
    api_base: str
    request_delay: float
    timeout: float


@dataclass
class OpsConfig:
    database: DatabaseConfig
    backup: BackupConfig
    taric: TaricConfig
