"""
Script para aplicar as migrations de campanhas de email.

Uso:
    python migrations/email-campaigns/apply.py

Requer: SUPABASE_URL e SUPABASE_SERVICE_KEY no .env e a funcao
`exec_sql(sql text)` criada no banco.
"""
import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from supabase import create_client

# Carregar .env
load_dotenv()

SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_SERVICE_KEY")

# Diretorio das migrations
MIGRATIONS_DIR = Path(__file__).parent

# Ordem das migrations
MIGRATIONS = [
    "001_email_campaigns.sql",
]


def apply_migrations(client) -> bool:
    """Aplica todas as migrations em ordem. Retorna False no primeiro erro."""
    for migration_file in MIGRATIONS:
        path = MIGRATIONS_DIR / migration_file
        if not path.exists():
            print(f"[SKIP] {migration_file} nao encontrado")
            continue

        print(f"[APPLY] {migration_file}...")
        try:
            client.rpc("exec_sql", {"sql": path.read_text()}).execute()
        except Exception as e:
            print(f"[ERROR] {migration_file}: {e}")
            return False
        print(f"[OK] {migration_file}")
    return True


if __name__ == "__main__":
    if not SUPABASE_URL or not SUPABASE_KEY:
        print("Erro: SUPABASE_URL e SUPABASE_SERVICE_KEY necessarios no .env")
        sys.exit(1)

    print("=== Email campaigns migrations ===")
    print(f"URL: {SUPABASE_URL}")
    print()

    if not apply_migrations(create_client(SUPABASE_URL, SUPABASE_KEY)):
        print()
        print("Execute os SQLs manualmente no Supabase SQL Editor:")
        for m in MIGRATIONS:
            print(f"  - migrations/email-campaigns/{m}")
        sys.exit(1)
