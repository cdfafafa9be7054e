from callpair.normalizer import display_key, format_phone_for_speech
from callpair.states import State

VOICE = "Polly.Matthew"

GREETING = "Hi, welcome to the Phone Burner demo. What's your name?"
NO_INPUT = "I didn't catch that. Let's try again."

ASK_VERTICAL = "What industry are you in? Say Real Estate, Insurance, Mortgage, or Other."
ASK_PAIN = "What's your biggest pain point? Say Spam Flags, Awkward Delay, Low Answer Rates, or Speed."
ASK_PHONE = (
    "Now here's the exciting part. I'm going to demonstrate our power dialer by calling you back "
    "instantly. What's your phone number? Please say it digit by digit."
)
ASK_SCHEDULE = "Would you like to schedule a follow-up call? Say yes or no."

CODE_RETRY = "Sorry, I didn't get that. Please say the four digits one at a time, like four eight two seven."
CODE_NOT_FOUND = (
    "I couldn't find that code. Please make sure you're reading the code from your webpage and try again."
)
CODE_GIVE_UP = "Sorry, I couldn't match that code. Please refresh the webpage and try again."
VERTICAL_RETRY = "I didn't catch that. Please say Real Estate, Insurance, Mortgage, or Other."
PAIN_RETRY = "I didn't catch that. Please say Spam Flags, Awkward Delay, Low Answer Rates, or Speed."
PHONE_RETRY = "I didn't quite get that. Please say your 10 digit phone number, digit by digit."
SCHEDULE_RETRY = "Sorry, was that a yes or a no? Would you like to schedule a follow-up?"

GAVE_UP = "I'm having trouble understanding. Please refresh the webpage and call back to try again. Goodbye!"
APOLOGY = "Sorry, something went wrong on our end. Please refresh the webpage and try again."
SESSION_LOST = "Sorry, I lost track of your session. Please refresh the webpage and call back to start over."
VERIFY_FIRST = "Before we go on, please say the four digit code you see on your website."

SCHEDULE_ACCEPTED = (
    "Great! Check your screen - the calendar is now open. In a real scenario, you would select a date "
    "and time, and the system would automatically schedule the call and send a reminder."
)
SCHEDULE_DECLINED = "No problem! The calendar feature is there whenever you need it."
GOODBYE = (
    "That's the Phone Burner power dialer demo! You've seen instant callbacks, real-time CRM updates, "
    "and appointment scheduling. Thanks for trying it out. Goodbye!"
)

DIGIT_HINTS = "zero, one, two, three, four, five, six, seven, eight, nine"

SPEECH_HINTS = {
    State.AWAITING_NAME: "",
    State.AWAITING_CODE: DIGIT_HINTS,
    State.AWAITING_VERTICAL: "real estate, insurance, mortgage, other",
    State.AWAITING_PAIN: "spam flags, awkward delay, low answer rates, speed",
    State.AWAITING_PHONE: DIGIT_HINTS,
    State.AWAITING_SCHEDULE_ANSWER: "yes, no, yeah, nope, sure, okay",
}

# What to say when a step has to be asked again from scratch (restored leg, no-input redirect).
STATE_QUESTIONS = {
    State.AWAITING_NAME: GREETING,
    State.AWAITING_CODE: "Please say the four digit code you see on your website.",
    State.AWAITING_VERTICAL: ASK_VERTICAL,
    State.AWAITING_PAIN: ASK_PAIN,
    State.AWAITING_PHONE: "Please say your phone number digit by digit, like 4 1 5 5 5 5 1 2 3 4.",
    State.AWAITING_SCHEDULE_ANSWER: ASK_SCHEDULE,
}


def speech_hints(state: State) -> str:
    return SPEECH_HINTS.get(state, "")


def ask_code(name: str) -> str:
    return f"Thanks, {name}. Now say the four digit code you see on your website."


def locked_out(wait_seconds: int) -> str:
    return f"Too many failed attempts. Please wait {wait_seconds} seconds and try again."


def paired(name: str) -> str:
    return (
        f"Connected! Keep the webpage open, {name}. Now, let me ask you a couple quick questions. "
        f"{ASK_VERTICAL}"
    )


def vertical_selected(vertical: str) -> str:
    return (
        f"Great, {display_key(vertical)}! What's your biggest pain point with outbound calling? "
        "Say Spam Flags, Awkward Delay, Low Answer Rates, or Speed."
    )


def pain_selected(pain: str) -> str:
    return (
        f"{display_key(pain)} - we hear that a lot. Check your browser, you should see it updating "
        f"in real-time. {ASK_PHONE}"
    )


def callback_readback(phone: str) -> str:
    return (
        f"Got it! I have {format_phone_for_speech(phone)}. Watch your screen - the dialer is about "
        "to call you. Hang up now and answer the incoming call!"
    )


def callback_greeting(name: str) -> str:
    return (
        f"Hi {name}! This is Phone Burner calling you back. Notice how fast that was? "
        "No awkward delay, no pause - instant connection. Look at your browser now. You can see "
        "the dialer interface with your contact information, ready to take notes and schedule "
        f"follow-ups. {ASK_SCHEDULE}"
    )


def appointment_booked(date_text: str, time_text: str) -> str:
    return (
        f"{SCHEDULE_ACCEPTED} I've scheduled a demo follow-up for {date_text} at {time_text}. "
        f"You should see it on the calendar now. {GOODBYE}"
    )


def schedule_declined() -> str:
    return f"{SCHEDULE_DECLINED} {GOODBYE}"
