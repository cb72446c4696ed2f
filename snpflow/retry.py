import time

from snpflow.errors import ConnectivityError, PollTimeout, RemoteCommandError
from snpflow.log import print_info

DEFAULT_MAX_ATTEMPTS = 30
DEFAULT_INTERVAL = 1.0


def wait_until(predicate, max_attempts=DEFAULT_MAX_ATTEMPTS, interval=DEFAULT_INTERVAL,
               retry_on=(ConnectivityError, RemoteCommandError), sleep=time.sleep,
               description="guest"):
    """
    Call predicate until it returns a truthy value.

    A falsy result, or an exception listed in retry_on, counts as a failed
    attempt and is followed by a sleep of interval seconds (no sleep after the
    last attempt). Any other exception escapes immediately. The predicate may
    run up to max_attempts times, so it has to be safe to repeat.

    Returns the predicate's value; raises PollTimeout once attempts run out.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_error = None
    for attempt in range(1, max_attempts + 1):
        try:
            result = predicate()
        except retry_on as e:
            last_error = e
            result = None
        if result:
            if attempt > 1:
                print_info(f"{description} ready after {attempt} attempts")
            return result
        if attempt < max_attempts:
            sleep(interval)

    raise PollTimeout(description, max_attempts, last_error)
