import argparse
import logging
import sys
import time
import uuid

from marketsync.errors import SyncError
from marketsync.services.job_scheduler import get_job_scheduler
from marketsync.services.sync_service import JOB_TYPES, get_sync_service

# 로그 설정
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("marketsync.cli")


def run_sync_command(args):
    """동기화 명령 실행기 (현재 프로세스에서 끝까지 실행)"""
    service = get_sync_service()
    system_id = uuid.UUID(args.system) if args.system else None
    if args.all:
        run_ids = service.trigger_all(args.tenant, args.job_type, trigger="manual", wait=True)
    else:
        run_ids = [service.trigger_sync(args.tenant, args.job_type, system_id, trigger="manual", wait=True)]

    exit_code = 0
    for run_id in run_ids:
        status = service.get_run_status(run_id)
        logger.info(f"[CLI] run {run_id}: {status['status']} {status['counts']}")
        for error in status["errors"][: args.show_errors]:
            logger.info(f"[CLI]   {error['entity_type']} {error['entity_id']}: {error['error_code']} {error['message']}")
        if status["status"] == "failed":
            exit_code = 1
    return exit_code


def run_scheduler_command(args):
    """스케줄러 상주 실행"""
    scheduler = get_job_scheduler()
    count = scheduler.load_all()
    scheduler.start()
    logger.info(f"[CLI] scheduler running with {count} timer(s). Ctrl+C to exit")
    try:
        while True:
            time.sleep(60)
    except KeyboardInterrupt:
        logger.info("[CLI] shutting down")
    finally:
        scheduler.shutdown()
        scheduler.service.shutdown()
    return 0


def run_test_connection_command(args):
    result = get_sync_service().test_connection(uuid.UUID(args.system))
    logger.info(f"[CLI] ok={result['ok']} latency={result['latency_ms']}ms detail={result['detail']}")
    return 0 if result["ok"] else 1


def run_unmapped_command(args):
    system_id = uuid.UUID(args.system) if args.system else None
    items = get_sync_service().list_unmapped_tokens(args.tenant, args.kind, system_id)
    for item in items:
        candidates = ", ".join(f"{c['name']}({c['confidence']})" for c in item["candidates"]) or "-"
        print(f"{item['token']}\tseen={item['seen_count']}\t{candidates}")
    logger.info(f"[CLI] {len(items)} unmapped {args.kind} token(s)")
    return 0


def run_cleanup_command(args):
    """보관 기간이 지난 실행 이력 삭제"""
    purged = get_sync_service().cleanup_run_logs(args.days)
    logger.info(f"[CLI] removed {purged} run(s)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="marketsync 운영 CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("run-sync", help="동기화 작업 실행")
    sync_parser.add_argument("tenant", help="테넌트 ID")
    sync_parser.add_argument("job_type", choices=JOB_TYPES, help="작업 종류")
    sync_parser.add_argument("--system", help="외부 시스템 ID (생략 시 유일한 대상)")
    sync_parser.add_argument("--all", action="store_true", help="지원하는 모든 활성 시스템에 대해 실행")
    sync_parser.add_argument("--show-errors", type=int, default=20, help="출력할 오류 수")
    sync_parser.set_defaults(func=run_sync_command)

    sched_parser = subparsers.add_parser("scheduler", help="스케줄러 상주 실행")
    sched_parser.set_defaults(func=run_scheduler_command)

    test_parser = subparsers.add_parser("test-connection", help="외부 시스템 연결 점검")
    test_parser.add_argument("system", help="외부 시스템 ID")
    test_parser.set_defaults(func=run_test_connection_command)

    unmapped_parser = subparsers.add_parser("unmapped", help="수동 매핑 대기 토큰 조회")
    unmapped_parser.add_argument("tenant", help="테넌트 ID")
    unmapped_parser.add_argument("kind", choices=["brand", "category", "attribute"])
    unmapped_parser.add_argument("--system", help="외부 시스템 ID")
    unmapped_parser.set_defaults(func=run_unmapped_command)

    cleanup_parser = subparsers.add_parser("cleanup-logs", help="오래된 실행 이력 삭제")
    cleanup_parser.add_argument("--days", type=int, default=None, help="보관 일수 (기본: SYNC_LOG_RETENTION_DAYS)")
    cleanup_parser.set_defaults(func=run_cleanup_command)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        code = args.func(args)
    except SyncError as e:
        logger.error(f"[CLI] {e.error_code}: {e.message}")
        code = 1
    except Exception as e:
        logger.exception(f"[CLI] Critical error: {e}")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
