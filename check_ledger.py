import sys

from marketplace.config import Config
from marketplace.ledger import ConversionLedger, funding_status
from marketplace.store import MarketplaceStore


def check_ledger(project_ids=None):
    """프로젝트별 펀딩 현황과 전환 이벤트 합계를 비교해 출력합니다 (읽기 전용)."""
    config = Config.from_env()
    store = MarketplaceStore(config.database_url)
    ledger = ConversionLedger(store)

    print("--- Project Status Summary ---")
    projects = store.list_projects(limit=1000)
    counts = {}
    for project in projects:
        counts[project["status"]] = counts.get(project["status"], 0) + 1
    for status, count in sorted(counts.items()):
        print(f"{status}: {count}")

    if project_ids:
        projects = [p for p in (store.get_project(pid) for pid in project_ids) if p]

    print("\n--- Funding Reconciliation ---")
    mismatches = 0
    for project in projects:
        funding = funding_status(project)
        report = ledger.reconcile(project["id"])
        marker = "OK" if report["consistent"] else "MISMATCH"
        print(
            f"[{marker}] {project['id']} '{project['title']}' ({project['status']}) "
            f"funded {funding.funded_amount:.2f}/{funding.price:.2f} ({funding.progress_percent}%)",
            flush=True,
        )
        print(
            f"  Conversions: {report['conversions']}, recorded total: {report['recorded_total']:.2f}, "
            f"difference: {report['difference']:.2f}",
            flush=True,
        )
        if funding.fully_funded and not project.get("gumroad_link"):
            print("  Fully funded but not yet published", flush=True)
        if not report["consistent"]:
            mismatches += 1

    print(f"\n{len(projects)} project(s) checked, {mismatches} mismatch(es)")
    return mismatches


if __name__ == "__main__":
    sys.exit(1 if check_ledger(sys.argv[1:]) else 0)
