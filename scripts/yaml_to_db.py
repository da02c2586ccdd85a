import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
import argparse
import yaml
from sqlalchemy.orm import Session
from sqlalchemy import select
from core.db import Base, get_sync_engine
from models.tenant import Tenant, TenantMember
from models.service import Service

# tenants.yaml 예시
#
# acme:
#   email_domain: acme.com
#   members:
#     - {email: lead@acme.com, role: ADMIN}
#   services:
#     - {name: api-gateway, description: 외부 진입점}
#     - name: billing


def load_yaml(path):
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def upsert_tenant(session, name, info):
    domain = info["email_domain"].strip().lower()
    tenant = session.execute(select(Tenant).where(Tenant.email_domain == domain)).scalars().first()
    if tenant is None:
        tenant = Tenant(name=name, email_domain=domain)
        session.add(tenant)
        session.flush()
    else:
        tenant.name = name

    for member in info.get("members") or []:
        email = member["email"].strip().lower()
        role = str(member.get("role", "EDITOR")).upper()
        existing = session.execute(
            select(TenantMember).where(TenantMember.tenant_id == tenant.id, TenantMember.email == email)
        ).scalars().first()
        if existing is None:
            session.add(TenantMember(tenant_id=tenant.id, email=email, role=role))
        else:
            existing.role = role

    for svc in info.get("services") or []:
        svc_name = svc["name"].strip()
        existing = session.execute(
            select(Service).where(Service.tenant_id == tenant.id, Service.name == svc_name)
        ).scalars().first()
        if existing is None:
            session.add(Service(tenant_id=tenant.id, name=svc_name, description=svc.get("description") or ""))
        elif svc.get("description") is not None:
            existing.description = svc["description"]
    return tenant


def main():
    parser = argparse.ArgumentParser(description="Seed tenants, members and services from YAML")
    parser.add_argument("yaml_path", nargs="?", default="tenants.yaml")
    parser.add_argument("--create-tables", action="store_true", help="Create tables before seeding")
    args = parser.parse_args()

    data = load_yaml(args.yaml_path)
    engine = get_sync_engine()
    if args.create_tables:
        Base.metadata.create_all(bind=engine)

    with Session(bind=engine) as session:
        for name, info in data.items():
            upsert_tenant(session, name, info)
        session.commit()
    print(f"{args.yaml_path} → DB 반영 완료 ({len(data)} tenants)")


if __name__ == "__main__":
    main()
