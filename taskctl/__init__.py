from .api import enqueue, enqueue_deferred
from .config import Settings
from .deferred import DeferredBuffer, current_buffer, request_scope
from .dispatcher import BackgroundDispatcher, CycleReport
from .models import ALWAYS, ONCE, Job
from .scheduler import Scheduler
from .schedules import ScheduleDefinition, ScheduleRegistry, cron, daily_at, every, schedules, weekly_on
from .tasks import FunctionTask, Task, TaskRegistry, TaskResult, discover, registry
from .worker import QueueDispatcher

__version__ = "0.1.0"
