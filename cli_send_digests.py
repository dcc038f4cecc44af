from WeatherBot import create_app
from WeatherBot.send_digests import send_digests_job

app = create_app()

if __name__ == "__main__":
    with app.app_context():
        stats = send_digests_job()
        print(stats)
