#!/usr/bin/env python3
"""
Automated Render Deployment Script

This script uses Render's REST API to automatically:
1. Create a PostgreSQL database
2. Create the InvoiceFlow Web Service
3. Configure environment variables (database, cron secret, email provider)
4. Create a daily Cron Job that runs the reminder sweep

Requirements:
- Render API key (get from: https://dashboard.render.com/account/api-keys)
- Python requests library: pip install requests
"""

import requests
import json
import secrets
import sys
import os
from typing import Optional, Dict, Any, List

# Render API base URL
RENDER_API_BASE = "https://api.render.com/v1"

# Request timeout for Render API calls (seconds)
REQUEST_TIMEOUT = 30

# Daily at 08:00 UTC
DEFAULT_SWEEP_SCHEDULE = "0 8 * * *"

def get_api_key() -> Optional[str]:
    """Get Render API key from environment or prompt user."""
    api_key = os.getenv("RENDER_API_KEY")
    if not api_key:
        print("\n" + "="*60)
        print("Render API Key Required")
        print("="*60)
        print("To get your API key:")
        print("1. Go to: https://dashboard.render.com/account/api-keys")
        print("2. Click 'New API Key'")
        print("3. Copy the key")
        print("\nYou can either:")
        print("  - Set environment variable: export RENDER_API_KEY=your_key")
        print("  - Or enter it when prompted below")
        print("="*60)
        api_key = input("\nEnter your Render API key: ").strip()

    if not api_key:
        print("❌ API key is required. Exiting.")
        sys.exit(1)

    return api_key

def get_headers(api_key: str) -> Dict[str, str]:
    """Get request headers with API key."""
    return {
        "Authorization": f"Bearer {api_key}",
        "Accept": "application/json",
        "Content-Type": "application/json"
    }

def get_owner_id(api_key: str) -> Optional[str]:
    """Get the owner ID (user or team) for API requests."""
    headers = get_headers(api_key)
    response = requests.get(f"{RENDER_API_BASE}/owners", headers=headers, timeout=REQUEST_TIMEOUT)

    if response.status_code == 200:
        owners = response.json()
        if owners:
            # Use the first owner (usually the user)
            owner_id = owners[0].get("owner", {}).get("id")
            print(f"✅ Found owner ID: {owner_id}")
            return owner_id
        else:
            print("❌ No owners found")
            return None
    else:
        print(f"❌ Failed to get owner ID: {response.status_code} - {response.text}")
        return None

def create_postgres_database(api_key: str, owner_id: str, name: str = "invoiceflow-db") -> Optional[str]:
    """Create a PostgreSQL database on Render."""
    print(f"\n📦 Creating PostgreSQL database: {name}...")

    headers = get_headers(api_key)
    data = {
        "name": name,
        "databaseName": "invoiceflow",
        "user": "invoiceflow_user",
        "plan": "free",  # or "starter", "standard", etc.
        "region": "oregon"  # or your preferred region
    }

    response = requests.post(
        f"{RENDER_API_BASE}/owners/{owner_id}/databases",
        headers=headers,
        json=data,
        timeout=REQUEST_TIMEOUT
    )

    if response.status_code == 201:
        db = response.json()
        db_id = db.get("database", {}).get("id")
        print(f"✅ Database created: {db_id}")
        return db_id
    else:
        print(f"❌ Failed to create database: {response.status_code} - {response.text}")
        return None

def get_repo_info() -> Dict[str, str]:
    """Get repository information from git."""
    import subprocess

    try:
        # Get remote URL
        remote_url = subprocess.check_output(
            ["git", "config", "--get", "remote.origin.url"],
            text=True
        ).strip()

        # Handle both https://github.com/owner/repo.git and git@github.com:owner/repo.git
        if "github.com" in remote_url:
            parts = remote_url.replace(".git", "").replace(":", "/").split("/")
            repo_name = parts[-1]
            owner = parts[-2] if len(parts) > 1 else None

            return {
                "repo": f"https://github.com/{owner}/{repo_name}",
                "owner": owner,
                "name": repo_name
            }
    except Exception as e:
        print(f"⚠️  Could not get git repo info: {e}")

    repo = input("GitHub repository (owner/name): ").strip()
    if "/" not in repo:
        print("❌ Repository is required. Exiting.")
        sys.exit(1)
    owner, name = repo.split("/", 1)
    return {"repo": f"https://github.com/{owner}/{name}", "owner": owner, "name": name}

def build_env_vars(db_id: Optional[str], cron_secret: str, brevo_api_key: str, email_from: str) -> List[Dict[str, str]]:
    """Environment shared by the web service and the cron job."""
    env_vars = [
        {"key": "CRON_SECRET", "value": cron_secret},
        {"key": "EMAIL_PROVIDER", "value": "brevo" if brevo_api_key else "console"},
        {"key": "EMAIL_FROM", "value": email_from},
    ]
    if brevo_api_key:
        env_vars.append({"key": "BREVO_API_KEY", "value": brevo_api_key})

    # Add database connection if database was created
    if db_id:
        env_vars.append({
            "key": "DATABASE_URL",
            "value": f"${{db.{db_id}.DATABASE_URL}}"  # Reference the database
        })
    return env_vars

def _create_service(api_key: str, owner_id: str, service_data: Dict[str, Any], label: str) -> Optional[str]:
    response = requests.post(
        f"{RENDER_API_BASE}/owners/{owner_id}/services",
        headers=get_headers(api_key),
        json=service_data,
        timeout=REQUEST_TIMEOUT
    )

    if response.status_code == 201:
        service = response.json()
        service_id = service.get("service", {}).get("id")
        service_url = service.get("service", {}).get("serviceDetails", {}).get("url")
        print(f"✅ {label} created: {service_id}")
        if service_url:
            print(f"   URL: {service_url}")
        return service_id
    else:
        print(f"❌ Failed to create {label.lower()}: {response.status_code} - {response.text}")
        try:
            print(f"   Response: {json.dumps(response.json(), indent=2)}")
        except ValueError:
            pass
        return None

def create_web_service(api_key: str, owner_id: str, repo_info: Dict[str, str],
                       env_vars: List[Dict[str, str]]) -> Optional[str]:
    """Create the API Web Service on Render."""
    print(f"\n🚀 Creating Web Service...")
    print(f"   Repository: {repo_info['repo']}")

    service_data = {
        "type": "web_service",
        "name": "invoiceflow",
        "repo": repo_info["repo"],
        "branch": "main",
        "runtime": "python",
        "plan": "free",
        "region": "oregon",
        "buildCommand": "pip install .",
        "startCommand": "uvicorn invoiceflow.main:app --host 0.0.0.0 --port $PORT",
        "healthCheckPath": "/health",
        "envVars": env_vars
    }
    return _create_service(api_key, owner_id, service_data, "Web Service")

def create_cron_job(api_key: str, owner_id: str, repo_info: Dict[str, str],
                    env_vars: List[Dict[str, str]], schedule: str = DEFAULT_SWEEP_SCHEDULE) -> Optional[str]:
    """Create the Cron Job that runs the reminder sweep once a day."""
    print(f"\n⏰ Creating Cron Job (schedule: {schedule})...")

    service_data = {
        "type": "cron_job",
        "name": "invoiceflow-sweep",
        "repo": repo_info["repo"],
        "branch": "main",
        "runtime": "python",
        "plan": "starter",
        "region": "oregon",
        "schedule": schedule,
        "buildCommand": "pip install .",
        "startCommand": "python -m invoiceflow.sweep",
        "envVars": env_vars
    }
    return _create_service(api_key, owner_id, service_data, "Cron Job")

def main():
    """Main deployment function."""
    print("="*60)
    print("InvoiceFlow - Automated Render Deployment")
    print("="*60)

    # Get API key
    api_key = get_api_key()

    # Get owner ID
    print("\n🔍 Getting owner information...")
    owner_id = get_owner_id(api_key)
    if not owner_id:
        print("❌ Could not get owner ID. Exiting.")
        sys.exit(1)

    # Ask user what to create
    print("\n" + "="*60)
    print("What would you like to create?")
    print("="*60)
    print("1. Create PostgreSQL database + Web Service + Cron Job (recommended)")
    print("2. Create Web Service + Cron Job only (use existing database)")
    print("3. Create PostgreSQL database only")

    choice = input("\nEnter choice (1-3): ").strip()

    db_id = None
    service_id = None
    cron_id = None
    cron_secret = None

    if choice == "1" or choice == "3":
        # Create database
        db_name = input("Database name (default: invoiceflow-db): ").strip() or "invoiceflow-db"
        db_id = create_postgres_database(api_key, owner_id, db_name)
        if not db_id and choice == "1":
            print("❌ Database creation failed. Cannot continue with service creation.")
            sys.exit(1)

    if choice == "1" or choice == "2":
        repo_info = get_repo_info()
        cron_secret = os.getenv("CRON_SECRET") or secrets.token_urlsafe(32)
        brevo_api_key = os.getenv("BREVO_API_KEY") or input("Brevo API key (blank = console email): ").strip()
        email_from = os.getenv("EMAIL_FROM") or "Invoice Reminders <no-reply@invoiceflow.app>"
        env_vars = build_env_vars(db_id, cron_secret, brevo_api_key, email_from)

        service_id = create_web_service(api_key, owner_id, repo_info, env_vars)
        if not service_id:
            print("❌ Service creation failed.")
            sys.exit(1)

        cron_id = create_cron_job(api_key, owner_id, repo_info, env_vars)
        if not cron_id:
            print("⚠️  Cron Job creation failed. Reminders can still be sent via POST /api/cron/run-followups.")

    # Summary
    print("\n" + "="*60)
    print("✅ Deployment Complete!")
    print("="*60)
    if db_id:
        print(f"📦 Database ID: {db_id}")
    if service_id:
        print(f"🚀 Service ID: {service_id}")
    if cron_id:
        print(f"⏰ Cron Job ID: {cron_id}")
    if cron_secret:
        print(f"🔑 CRON_SECRET: {cron_secret}")
    print("\nNext steps:")
    print("1. Check Render Dashboard: https://dashboard.render.com")
    print("2. Wait for deployment to complete (usually 2-5 minutes)")
    print("3. Test your service at the URL shown in Render Dashboard (/health)")
    print("4. Trigger a sweep manually: curl -X POST -H 'Authorization: Bearer <CRON_SECRET>' <URL>/api/cron/run-followups")

if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\n\n❌ Deployment cancelled by user.")
        sys.exit(1)
    except Exception as e:
        print(f"\n❌ Error: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)
