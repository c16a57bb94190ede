import logging

from apscheduler.schedulers.background import BackgroundScheduler

from borrow_records import mark_overdue_loans

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler()


# Overdue sweep
def sweep_overdue_loans(app):
    with app.app_context():
        flipped = mark_overdue_loans()
        logger.debug(f"Overdue sweep completed: {len(flipped)} loans marked overdue")
        return flipped


def start_scheduler(app):
    if scheduler.running:
        return scheduler
    scheduler.add_job(
        sweep_overdue_loans,
        'interval',
        hours=app.config['OVERDUE_SWEEP_HOURS'],
        args=[app],
        id='overdue-sweep',
        replace_existing=True,
    )
    scheduler.start()
    logger.debug(f"Scheduler started: overdue sweep every {app.config['OVERDUE_SWEEP_HOURS']}h")
    return scheduler
