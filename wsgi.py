from devoverflow import create_app

# WSGI entry point for the DevOverflow application.
#
# Example:
#     To run the development server:
#         python wsgi.py
#
#     To deploy with Gunicorn:
#         gunicorn wsgi:app
#

app = create_app()

if __name__ == '__main__':
    # Run development server as a convenience wrapper
    app.run(host='0.0.0.0', port=5000)
