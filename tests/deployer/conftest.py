import os

os.environ.setdefault("DEPLOYER_STORAGE__DATABASE_URL", "sqlite+aiosqlite:///./test_deployer.db")
os.environ.setdefault("DEPLOYER_STORAGE__LOCAL_ARTIFACT_DIR", "./.test_artifacts")
os.environ.setdefault("DEPLOYER_ENVIRONMENT", "qa")
